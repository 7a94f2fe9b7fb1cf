"""Application-facing API over the record store, derived state and sync.

A single :class:`LedgerAPI` is created at startup with :func:`initialize` and
passed to whatever needs it. Mutations of transactions go through here so that
asset balances and goal progress stay in step with the records.

Example:

    .. code-block:: python

        from FirstMillion.core import ledger

        api = ledger.initialize()
        api.start()

        tx = api.create('transactions', {
            'category_id': 3, 'kind': 'expense', 'amount': '50',
            'occurred_on': '2024-05-01', 'paid_via': 'cash',
        })
        unsubscribe = api.subscribe('transactions', refresh_view)

"""
import datetime
import logging
from typing import Any, Callable, Dict, List, Optional

from PySide6 import QtCore

from . import records
from . import service
from .auth import AuthManager, RemoteUser
from .bus import ChangeBus
from .database import DatabaseAPI, StorageKey
from .derived import DerivedStateCache, GoalProgress
from .remote import RemoteService, SheetsRemoteService
from .scheduler import SyncScheduler, SyncStatus
from .store import RecordStore
from .sync import SyncAPI, SyncResult
from ..settings import lib
from ..settings import locale
from ..status import status

DEFAULT_CURRENCY = 'USD'
DEFAULT_THEME = 'default'

# Kinds whose records make up asset balances
HISTORY_KINDS = (records.Kind.Transactions, records.Kind.Transfers)

ledger: Optional['LedgerAPI'] = None


class LedgerAPI(QtCore.QObject):
    """The UI-facing interface: CRUD per kind, subscriptions, sync control and preferences.

    Args:
        settings: Application settings and paths.
        remote: Remote record service. Defaults to the Google Sheets backend.
        auth_manager: Defaults to a new :class:`AuthManager` for settings.
        run: Blocking executor for sync network calls.
        dispatch: Non-blocking executor for the startup auth check.
    """

    def __init__(self, settings: lib.SettingsAPI, remote: Optional[RemoteService] = None,
                 auth_manager: Optional[AuthManager] = None,
                 run: Callable[..., Any] = service.start_asynchronous,
                 dispatch: Callable[..., Any] = service.dispatch,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.settings = settings

        self.database = DatabaseAPI(settings, parent=self)
        self.bus = ChangeBus(parent=self)
        self.store = RecordStore(self.database, self.bus)
        self.store.seed_defaults()
        self.derived = DerivedStateCache(self.store)

        self.auth_manager = auth_manager or AuthManager(settings, parent=self)
        self.remote = remote or SheetsRemoteService(settings, self.auth_manager)

        self.sync = SyncAPI(self.store, self.remote, settings=settings, run=run, parent=self)
        self.scheduler = SyncScheduler(
            self.store, self.sync, self.remote, self.derived,
            settings=settings, dispatch=dispatch, parent=self
        )

    def list(self, kind: Any) -> List[Dict[str, Any]]:
        return self.store.list(kind)

    def get(self, kind: Any, _id: Any) -> Optional[Dict[str, Any]]:
        return self.store.get(kind, _id)

    def require(self, kind: Any, _id: Any) -> Dict[str, Any]:
        """Return the record or raise.

        Raises:
            status.RecordNotFoundException: If the record does not exist.
        """
        record = self.store.get(kind, _id)
        if record is None:
            raise status.RecordNotFoundException(f'{kind} record "{_id}" does not exist.')
        return record

    def create(self, kind: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record and update derived state.

        Creating a goal for a category that already has one adds the new
        target to the existing goal instead, and returns that goal.

        Raises:
            status.ValidationException: If the fields are invalid.
        """
        kind = records.to_kind(kind)

        if kind == records.Kind.Goals:
            return self._create_goal(fields)
        if kind == records.Kind.Transfers:
            return self._create_transfer(fields)

        record = self.store.create(kind, fields)
        if kind == records.Kind.Transactions:
            self.derived.transaction_changed(None, record)
        elif kind == records.Kind.Assets and record.get('opening_balance') is None:
            self.derived.recompute_asset(record['id'])
            record = self.store.get(kind, record['id'])
        elif kind == records.Kind.Categories:
            self.derived.invalidate_goals()
        return record

    def _create_goal(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = records.validate(records.Kind.Goals, fields)
        category = self.store.get(records.Kind.Categories, fields['category_id'])
        if category is not None and category.get('kind') != records.EntryKind.Expense:
            raise status.ValidationException(
                f'Goals track expense categories, "{category.get("name")}" is an income category.'
            )

        existing = next(
            (g for g in self.store.list(records.Kind.Goals) if g.get('category_id') == fields['category_id']),
            None
        )
        self.derived.invalidate_goals()
        if existing is None:
            if not fields.get('name') and category is not None:
                fields['name'] = category.get('name')
            return self.store.create(records.Kind.Goals, fields)

        target = (existing.get('target_amount') or records.to_decimal(0)) + fields['target_amount']
        logging.info(f'Goal {existing["id"]} already covers category {fields["category_id"]}, target raised to {target}')
        return self.store.update(records.Kind.Goals, existing['id'], {'target_amount': target})

    def transfer(self, source_id: str, destination_id: str, amount: Any,
                 occurred_on: Any = None, description: Optional[str] = None) -> Dict[str, Any]:
        """Move money from one asset to another.

        The transfer is stored as its own record and both asset balances are
        adjusted. Recomputing the assets from history keeps the moved amount.

        Returns:
            The stored transfer.

        Raises:
            status.ValidationException: If the amount is not positive or both assets are the same.
            status.RecordNotFoundException: If either asset does not exist.
        """
        fields = {'source_id': source_id, 'destination_id': destination_id, 'amount': amount}
        if occurred_on is not None:
            fields['occurred_on'] = occurred_on
        if description:
            fields['description'] = description
        return self.create(records.Kind.Transfers, fields)

    def _check_transfer(self, fields: Dict[str, Any]) -> None:
        if fields['source_id'] == fields['destination_id']:
            raise status.ValidationException('A transfer needs two different assets.')
        if fields['amount'] <= 0:
            raise status.ValidationException(f'Transfer amount must be positive, got "{fields["amount"]}".')
        self.require(records.Kind.Assets, fields['source_id'])
        self.require(records.Kind.Assets, fields['destination_id'])

    def _create_transfer(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        fields = dict(fields)
        if not fields.get('occurred_on'):
            fields['occurred_on'] = datetime.date.today()
        fields = records.validate(records.Kind.Transfers, fields)
        self._check_transfer(fields)

        record = self.store.create(records.Kind.Transfers, fields)
        self.derived.transfer_changed(None, record)
        logging.info(f'Transferred {record["amount"]} from asset {record["source_id"]} to {record["destination_id"]}')
        return record

    def update(self, kind: Any, _id: Any, partial: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update a record and derived state.

        Returns:
            The updated record, or None if no record has this id.
        """
        kind = records.to_kind(kind)

        if kind == records.Kind.Assets and 'balance' in partial:
            partial = dict(partial)
            balance = partial.pop('balance')
            if self.store.get(kind, _id) is None:
                logging.warning(f'Cannot update assets record {_id}: not found')
                return None
            if partial:
                self.store.update(kind, _id, partial)
            return self.derived.set_asset_balance(_id, balance)

        before = self.store.get(kind, _id) if kind in HISTORY_KINDS else None
        if kind == records.Kind.Transfers and before is not None:
            self._check_transfer(dict(before, **records.validate(kind, partial, partial=True)))

        record = self.store.update(kind, _id, partial)
        if record is None:
            return None

        if kind == records.Kind.Transactions:
            self.derived.transaction_changed(before, record)
        elif kind == records.Kind.Transfers:
            self.derived.transfer_changed(before, record)
        elif kind in (records.Kind.Goals, records.Kind.Categories):
            self.derived.invalidate_goals()
        return record

    def delete(self, kind: Any, _id: Any) -> bool:
        """Delete a record and update derived state. Deleting an absent id succeeds silently."""
        kind = records.to_kind(kind)
        before = self.store.get(kind, _id) if kind in HISTORY_KINDS else None
        removed = self.store.delete(kind, _id)
        if removed and kind == records.Kind.Transactions:
            self.derived.transaction_changed(before, None)
        elif removed and kind == records.Kind.Transfers:
            self.derived.transfer_changed(before, None)
        elif removed and kind in (records.Kind.Goals, records.Kind.Categories):
            self.derived.invalidate_goals()
        return removed

    def set_asset_balance(self, asset_id: str, balance: Any) -> Dict[str, Any]:
        return self.derived.set_asset_balance(asset_id, balance)

    def goal_progress(self, goal_id: Any) -> Optional[GoalProgress]:
        return self.derived.goal_progress(goal_id)

    def subscribe(self, kind: Any, callback: Callable[[], None]) -> Callable[[], None]:
        """Call callback after every change of kind. Returns the unsubscribe function."""
        return self.bus.subscribe(records.to_kind(kind), callback)

    def get_user(self) -> Optional[Dict[str, Any]]:
        return self.store.get_user()

    def update_user(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.update_user(partial)

    def trigger_sync(self) -> Optional[SyncResult]:
        """Run a push-then-pull cycle now."""
        return self.scheduler.trigger_sync()

    def get_sync_status(self) -> SyncStatus:
        return self.scheduler.get_sync_status()

    def sign_in(self, timeout: Optional[int] = None) -> Optional[RemoteUser]:
        """Run the interactive sign-in. The scheduler starts syncing once it completes."""
        if timeout is None:
            return self.auth_manager.sign_in()
        return self.auth_manager.sign_in(timeout=timeout)

    def sign_out(self) -> None:
        """Sign out. Local data is kept."""
        self.auth_manager.sign_out()

    def start(self) -> None:
        """Begin the startup auth check and, once signed in, periodic sync."""
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.bus.clear()

    @property
    def currency(self) -> str:
        return self.store.get_flag(StorageKey.Currency, DEFAULT_CURRENCY)

    @currency.setter
    def currency(self, value: str) -> None:
        value = str(value).strip().upper()
        if not locale.is_currency_code(value):
            raise status.ValidationException(f'"{value}" is not a currency code.')
        self._set_preference(StorageKey.Currency, value)
        # Pushed with the profile
        self.store.update_user({'currency': value})

    def format_amount(self, value: Any, locale_name: str = locale.DEFAULT_LOCALE) -> str:
        """Format value in the preferred currency, e.g. '$1,234.50'."""
        return locale.format_amount(value, self.currency, locale_name)

    @property
    def theme(self) -> str:
        return self.store.get_flag(StorageKey.Theme, DEFAULT_THEME)

    @theme.setter
    def theme(self, value: str) -> None:
        if not value:
            raise status.ValidationException('Theme must not be empty.')
        self._set_preference(StorageKey.Theme, str(value))

    @property
    def onboarding_completed(self) -> bool:
        return self.store.get_flag(StorageKey.OnboardingCompleted) == 'true'

    @onboarding_completed.setter
    def onboarding_completed(self, value: bool) -> None:
        self._set_preference(StorageKey.OnboardingCompleted, 'true' if value else 'false')

    @property
    def auth_status(self) -> Optional[str]:
        """'authenticated', 'skipped', or None before the first auth check."""
        return self.store.get_flag(StorageKey.AuthStatus)

    def _set_preference(self, key: StorageKey, value: str) -> None:
        from .signals import signals
        self.store.set_flag(key, value)
        signals.preferenceChanged.emit(key.value, value)


def initialize(app_data_dir: Optional[str] = None, **kwargs: Any) -> LedgerAPI:
    """Create the application's LedgerAPI.

    Args:
        app_data_dir: Root directory for settings and storage. Defaults to the platform location.
        **kwargs: Passed to :class:`LedgerAPI`.

    Raises:
        RuntimeError: If the ledger was already initialized.
    """
    global ledger
    if ledger is not None:
        raise RuntimeError('The ledger is already initialized. Call shutdown() first.')

    settings = lib.SettingsAPI(app_data_dir=app_data_dir)
    ledger = LedgerAPI(settings, **kwargs)
    logging.debug('LedgerAPI initialized.')
    return ledger


def shutdown() -> None:
    """Stop the initialized ledger and release it."""
    global ledger
    if ledger is None:
        return
    ledger.shutdown()
    ledger = None
