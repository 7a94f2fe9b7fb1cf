"""Record kinds, field schemas and value casting.

Records are plain dictionaries. Each kind has a field schema describing the
config type of every field; :func:`validate` casts caller input to those types
and rejects anything that cannot be stored. Monetary fields are kept as
:class:`decimal.Decimal` in memory and written as strings everywhere else.

"""
import datetime
import decimal
import enum
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..status import status

LOCAL_OWNER = 'local-user'
UNCATEGORIZED = 'Uncategorized'
OWNER_COLUMN = 'user_id'

DATE_FORMAT = '%Y-%m-%d'

# Maintained by the store; an empty remote cell never clears them
STORE_FIELDS = ('id', 'created_at', 'updated_at')


class Kind(enum.StrEnum):
    """Entity kinds. Every kind except User is a keyed collection."""
    Categories = 'categories'
    Transactions = 'transactions'
    Investments = 'investments'
    Goals = 'goals'
    Assets = 'assets'
    Transfers = 'transfers'
    User = 'user'


COLLECTIONS: Tuple[Kind, ...] = (
    Kind.Categories,
    Kind.Transactions,
    Kind.Investments,
    Kind.Goals,
    Kind.Assets,
    Kind.Transfers,
)

# Remote collection for the single user profile record
PROFILES_COLLECTION = 'profiles'


class EntryKind(enum.StrEnum):
    Income = 'income'
    Expense = 'expense'


class PaymentMethod(enum.StrEnum):
    Cash = 'cash'
    Card = 'card'
    Bank = 'bank'
    Assets = 'assets'
    Other = 'other'


PAYMENT_METHOD_ASSETS: Dict[PaymentMethod, str] = {
    PaymentMethod.Bank: '1',
    PaymentMethod.Card: '2',
    PaymentMethod.Cash: '3',
    PaymentMethod.Assets: '4',
    PaymentMethod.Other: '5',
}

FIELD_TYPES = ('int', 'str', 'decimal', 'signed_decimal', 'date', 'datetime', 'bool', 'entry_kind', 'payment')

_timestamps = {
    'created_at': {'type': 'datetime', 'required': False},
    'updated_at': {'type': 'datetime', 'required': False},
}

SCHEMA: Dict[Kind, Dict[str, Dict[str, Any]]] = {
    Kind.Categories: {
        'id': {'type': 'int', 'required': False},
        'owner_key': {'type': 'str', 'required': False},
        'kind': {'type': 'entry_kind', 'required': True},
        'name': {'type': 'str', 'required': True},
        'icon': {'type': 'str', 'required': False},
        'color': {'type': 'str', 'required': False},
        **_timestamps,
    },
    Kind.Transactions: {
        'id': {'type': 'int', 'required': False},
        'owner_key': {'type': 'str', 'required': False},
        'category_id': {'type': 'int', 'required': True},
        'kind': {'type': 'entry_kind', 'required': True},
        'amount': {'type': 'decimal', 'required': True},
        'description': {'type': 'str', 'required': False},
        'occurred_on': {'type': 'date', 'required': True},
        'received_via': {'type': 'payment', 'required': False},
        'paid_via': {'type': 'payment', 'required': False},
        **_timestamps,
    },
    Kind.Investments: {
        'id': {'type': 'int', 'required': False},
        'owner_key': {'type': 'str', 'required': False},
        'name': {'type': 'str', 'required': True},
        'investment_type': {'type': 'str', 'required': True},
        'initial_amount': {'type': 'decimal', 'required': True},
        'current_value': {'type': 'decimal', 'required': False},
        'notes': {'type': 'str', 'required': False},
        **_timestamps,
    },
    Kind.Goals: {
        'id': {'type': 'int', 'required': False},
        'owner_key': {'type': 'str', 'required': False},
        'name': {'type': 'str', 'required': False},
        'category_id': {'type': 'int', 'required': True},
        'target_amount': {'type': 'decimal', 'required': True},
        'completed': {'type': 'bool', 'required': False},
        'deadline': {'type': 'date', 'required': False},
        **_timestamps,
    },
    Kind.Assets: {
        'id': {'type': 'str', 'required': False},
        'name': {'type': 'str', 'required': True},
        'balance': {'type': 'signed_decimal', 'required': False},
        'opening_balance': {'type': 'signed_decimal', 'required': False},
        'color': {'type': 'str', 'required': False},
        **_timestamps,
    },
    Kind.Transfers: {
        'id': {'type': 'int', 'required': False},
        'owner_key': {'type': 'str', 'required': False},
        'source_id': {'type': 'str', 'required': True},
        'destination_id': {'type': 'str', 'required': True},
        'amount': {'type': 'decimal', 'required': True},
        'occurred_on': {'type': 'date', 'required': True},
        'description': {'type': 'str', 'required': False},
        **_timestamps,
    },
    Kind.User: {
        'id': {'type': 'str', 'required': False},
        'email': {'type': 'str', 'required': True},
        'display_name': {'type': 'str', 'required': False},
        'currency': {'type': 'str', 'required': False},
        'is_pro_user': {'type': 'bool', 'required': False},
        **_timestamps,
    },
}

DECIMAL_FIELDS: Dict[Kind, Tuple[str, ...]] = {
    k: tuple(f for f, field_def in fields.items() if field_def['type'] in ('decimal', 'signed_decimal'))
    for k, fields in SCHEMA.items()
}


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def to_kind(kind: Any) -> Kind:
    """Return kind as a :class:`Kind`.

    Raises:
        status.ValidationException: If kind is not a known entity kind.
    """
    try:
        return Kind(kind)
    except ValueError as ex:
        raise status.ValidationException(f'Unknown record kind "{kind}".') from ex


def to_decimal(value: Any, signed: bool = False) -> decimal.Decimal:
    """Convert value to a finite Decimal without passing through binary floats.

    Args:
        value: A Decimal, int, str, or float. Floats are converted via their repr.
        signed: Allow negative values.

    Raises:
        status.ValidationException: If the value is not a finite number, or is negative when signed is False.
    """
    if isinstance(value, bool):
        raise status.ValidationException(f'"{value}" is not a valid amount.')
    if isinstance(value, decimal.Decimal):
        d = value
    else:
        text = str(value).strip().replace(',', '')
        try:
            d = decimal.Decimal(text)
        except decimal.InvalidOperation as ex:
            raise status.ValidationException(f'"{value}" is not a valid amount.') from ex

    if not d.is_finite():
        raise status.ValidationException(f'"{value}" is not a finite amount.')
    if not signed and d < 0:
        raise status.ValidationException(f'Amount must not be negative, got "{value}".')
    return d


def coerce_id(kind: Kind, value: Any) -> Any:
    """Return value as the identifier type of kind (str for assets, int otherwise).

    Raises:
        status.ValidationException: If value cannot be an identifier.
    """
    if SCHEMA[kind]['id']['type'] == 'str':
        if value is None or str(value).strip() == '':
            raise status.ValidationException(f'Invalid {kind} id "{value}".')
        return str(value).strip()
    try:
        if isinstance(value, bool):
            raise ValueError(value)
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(value)
        return int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as ex:
        raise status.ValidationException(f'Invalid {kind} id "{value}".') from ex


def cast_value(kind: Kind, field: str, value: Any) -> Any:
    """Cast a single field value to its configured type.

    Empty strings are treated as missing values.

    Raises:
        status.ValidationException: If the value cannot be cast.
    """
    field_def = SCHEMA[kind].get(field)
    if field_def is None:
        return value
    if value is None or (isinstance(value, str) and value.strip() == ''):
        return None

    config_type = field_def['type']

    if field == 'id':
        return coerce_id(kind, value)

    if config_type == 'int':
        try:
            if isinstance(value, bool):
                raise ValueError(value)
            return int(str(value).strip()) if isinstance(value, str) else int(value)
        except (TypeError, ValueError) as ex:
            raise status.ValidationException(f'"{field}" must be an integer, got "{value}".') from ex

    if config_type == 'str':
        return str(value)

    if config_type == 'decimal':
        return to_decimal(value)

    if config_type == 'signed_decimal':
        return to_decimal(value, signed=True)

    if config_type == 'date':
        if isinstance(value, datetime.datetime):
            return value.date().strftime(DATE_FORMAT)
        if isinstance(value, datetime.date):
            return value.strftime(DATE_FORMAT)
        text = str(value).strip()
        try:
            return datetime.date.fromisoformat(text[:10]).strftime(DATE_FORMAT)
        except ValueError as ex:
            raise status.ValidationException(f'"{field}" must be an ISO date, got "{value}".') from ex

    if config_type == 'datetime':
        if isinstance(value, datetime.datetime):
            return value.isoformat()
        text = str(value).strip()
        try:
            return datetime.datetime.fromisoformat(text).isoformat()
        except ValueError as ex:
            raise status.ValidationException(f'"{field}" must be an ISO timestamp, got "{value}".') from ex

    if config_type == 'bool':
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('true', '1', 'yes'):
            return True
        if text in ('false', '0', 'no'):
            return False
        raise status.ValidationException(f'"{field}" must be a boolean, got "{value}".')

    if config_type == 'entry_kind':
        try:
            return EntryKind(str(value).strip().lower()).value
        except ValueError as ex:
            raise status.ValidationException(
                f'"{field}" must be one of {[k.value for k in EntryKind]}, got "{value}".'
            ) from ex

    if config_type == 'payment':
        try:
            return PaymentMethod(str(value).strip().lower()).value
        except ValueError as ex:
            raise status.ValidationException(
                f'"{field}" must be one of {[p.value for p in PaymentMethod]}, got "{value}".'
            ) from ex

    logging.warning(f'Unknown config type "{config_type}" for field "{field}". Keeping "{value}".')
    return value


def validate(kind: Any, fields: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate and cast record fields.

    Args:
        kind: The entity kind.
        fields: Caller-supplied fields.
        partial: When True, required fields may be absent (used for updates).

    Returns:
        A new dictionary with every known field cast to its configured type.
        Unknown fields are passed through unchanged.

    Raises:
        status.ValidationException: If a required field is missing or a value is invalid.
    """
    kind = to_kind(kind)
    if not isinstance(fields, dict):
        raise status.ValidationException(f'Fields for {kind} must be a dict, got {type(fields)}.')

    result = {}
    for field, value in fields.items():
        result[field] = cast_value(kind, field, value)

    for field, field_def in SCHEMA[kind].items():
        if not field_def['required']:
            continue
        if partial and field not in result:
            continue
        if result.get(field) is None:
            raise status.ValidationException(f'{kind} record is missing required field "{field}".')

    return result


def decode(kind: Kind, record: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a record read from storage back to its in-memory types."""
    record = dict(record)
    for field in DECIMAL_FIELDS[kind]:
        if record.get(field) is not None:
            record[field] = decimal.Decimal(str(record[field]))
    return record


def signed_amount(tx: Dict[str, Any]) -> decimal.Decimal:
    """Return the transaction amount, negative for expenses."""
    amount = to_decimal(tx.get('amount') or 0)
    return -amount if tx.get('kind') == EntryKind.Expense else amount


def asset_for(tx: Dict[str, Any]) -> Optional[str]:
    """Return the id of the asset a transaction moves money through, if any.

    Income uses ``received_via`` and expenses use ``paid_via``.
    """
    field = 'received_via' if tx.get('kind') == EntryKind.Income else 'paid_via'
    method = tx.get(field)
    if not method:
        return None
    try:
        return PAYMENT_METHOD_ASSETS[PaymentMethod(method)]
    except ValueError:
        logging.warning(f'Transaction {tx.get("id")} has unknown payment method "{method}".')
        return None


def transfer_effect(transfer: Dict[str, Any], asset_id: str) -> decimal.Decimal:
    """Return the change a transfer makes to an asset: negative for its source, positive for its destination."""
    amount = to_decimal(transfer.get('amount') or 0)
    effect = decimal.Decimal('0')
    if transfer.get('source_id') == asset_id:
        effect -= amount
    if transfer.get('destination_id') == asset_id:
        effect += amount
    return effect


def remote_columns(kind: Kind) -> List[str]:
    """Header row of the remote worksheet for kind."""
    return [f for f in SCHEMA[kind] if f != 'owner_key'] + [OWNER_COLUMN]


def _to_cell(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def to_remote(kind: Kind, record: Dict[str, Any], owner: str) -> Dict[str, str]:
    """Return the remote row for a record: string values plus the owner column."""
    row = {f: _to_cell(record.get(f)) for f in remote_columns(kind) if f != OWNER_COLUMN}
    row[OWNER_COLUMN] = str(owner)
    return row


def from_remote(kind: Kind, row: Dict[str, Any]) -> Dict[str, Any]:
    """Return the local fields for a remote row.

    The owner column becomes ``owner_key`` for kinds that carry one, and values
    are cast to their configured types. An empty cell clears an optional field
    (its value becomes None) so applying the row replaces the whole record. Empty
    required cells are left out and fail validation when a record is created.

    Raises:
        status.ValidationException: If the row holds invalid values.
    """
    fields = {}
    for column, value in row.items():
        if column == OWNER_COLUMN:
            if 'owner_key' in SCHEMA[kind]:
                fields['owner_key'] = value
            continue
        field_def = SCHEMA[kind].get(column)
        if field_def is None:
            continue
        if value is None or value == '':
            if field_def['required'] or column in STORE_FIELDS:
                continue
            value = None
        fields[column] = value
    return validate(kind, fields, partial=True)


def default_categories(owner: str = LOCAL_OWNER) -> List[Dict[str, Any]]:
    return [
        {'id': 1, 'owner_key': owner, 'kind': 'income', 'name': 'Salary', 'icon': 'dollar-sign', 'color': '#4caf50'},
        {'id': 2, 'owner_key': owner, 'kind': 'income', 'name': 'Freelance', 'icon': 'briefcase',
         'color': '#2196f3'},
        {'id': 3, 'owner_key': owner, 'kind': 'expense', 'name': 'Food', 'icon': 'utensils', 'color': '#ff9800'},
        {'id': 4, 'owner_key': owner, 'kind': 'expense', 'name': 'Transport', 'icon': 'car', 'color': '#f44336'},
    ]


def default_assets() -> List[Dict[str, Any]]:
    zero = decimal.Decimal('0')
    return [
        {'id': '1', 'name': 'Bank Account', 'balance': zero, 'opening_balance': zero,
         'color': 'from-blue-500 to-blue-600'},
        {'id': '2', 'name': 'Credit Card', 'balance': zero, 'opening_balance': zero,
         'color': 'from-purple-500 to-purple-600'},
        {'id': '3', 'name': 'Cash', 'balance': zero, 'opening_balance': zero,
         'color': 'from-green-500 to-green-600'},
        {'id': '4', 'name': 'Investments', 'balance': zero, 'opening_balance': zero,
         'color': 'from-amber-500 to-amber-600'},
        {'id': '5', 'name': 'Savings', 'balance': zero, 'opening_balance': zero,
         'color': 'from-indigo-500 to-indigo-600'},
    ]


def default_user() -> Dict[str, Any]:
    return {
        'id': LOCAL_OWNER,
        'email': 'local@user.com',
        'display_name': 'Local User',
        'is_pro_user': True,
    }
