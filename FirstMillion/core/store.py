"""Record store: the on-device authoritative collection of entities.

Every collection is persisted as a JSON array under its own
:class:`~FirstMillion.core.database.StorageKey`. All mutations go through
:class:`RecordStore`, which writes to storage before returning and then publishes
exactly one change event for the mutated kind.

"""
import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from . import records
from .bus import ChangeBus
from .database import DatabaseAPI, StorageKey, dumps
from ..status import status

STORAGE_KEYS: Dict[records.Kind, StorageKey] = {
    records.Kind.Categories: StorageKey.Categories,
    records.Kind.Transactions: StorageKey.Transactions,
    records.Kind.Investments: StorageKey.Investments,
    records.Kind.Goals: StorageKey.Goals,
    records.Kind.Assets: StorageKey.Assets,
    records.Kind.Transfers: StorageKey.Transfers,
}


class RecordStore:
    """CRUD over the typed collections.

    Args:
        database: Durable key-value storage.
        bus: Receives one ``publish(kind)`` per successful mutation.
    """

    def __init__(self, database: DatabaseAPI, bus: ChangeBus) -> None:
        self.database = database
        self.bus = bus

    def _load(self, kind: records.Kind) -> List[Dict[str, Any]]:
        data = self.database.get_json(STORAGE_KEYS[kind], [])
        if not isinstance(data, list):
            raise status.StorageInvalidException(f'Collection "{kind}" is not a list.')
        return [records.decode(kind, r) for r in data]

    def _counters(self) -> Dict[str, int]:
        return self.database.get_json(StorageKey.Counters, {})

    def _pending(self) -> Dict[str, List[Any]]:
        return self.database.get_json(StorageKey.Pending, {})

    def _collection(self, kind: Any) -> records.Kind:
        kind = records.to_kind(kind)
        if kind not in records.COLLECTIONS:
            raise status.ValidationException(f'"{kind}" is not a collection.')
        return kind

    @staticmethod
    def _index(items: List[Dict[str, Any]], _id: Any) -> Optional[int]:
        return next((i for i, r in enumerate(items) if r.get('id') == _id), None)

    def list(self, kind: Any) -> List[Dict[str, Any]]:
        """Return copies of every record of kind. Order carries no meaning."""
        kind = self._collection(kind)
        return self._load(kind)

    def get(self, kind: Any, _id: Any) -> Optional[Dict[str, Any]]:
        """Return a copy of the record, or None if it does not exist."""
        kind = self._collection(kind)
        try:
            _id = records.coerce_id(kind, _id)
        except status.ValidationException:
            return None
        items = self._load(kind)
        i = self._index(items, _id)
        return items[i] if i is not None else None

    def create(self, kind: Any, fields: Dict[str, Any], track: bool = True) -> Dict[str, Any]:
        """Validate, assign an id if needed, and persist a new record.

        Args:
            kind: The collection.
            fields: Record fields. A supplied ``id`` is kept as-is.
            track: Mark the record as changed since the last push.

        Returns:
            A copy of the stored record.

        Raises:
            status.ValidationException: If fields are invalid or the supplied id already exists.
        """
        kind = self._collection(kind)
        fields = records.validate(kind, fields)
        items = self._load(kind)
        counters = self._counters()
        counter = int(counters.get(kind, 0))
        existing = {r.get('id') for r in items}

        if fields.get('id') is not None:
            _id = fields['id']
            if _id in existing:
                raise status.ValidationException(f'A {kind} record with id "{_id}" already exists.')
            numeric = _id if isinstance(_id, int) else (int(_id) if _id.isdigit() else None)
            if numeric is not None:
                counter = max(counter, numeric)
        else:
            while True:
                counter += 1
                _id = records.coerce_id(kind, counter)
                if _id not in existing:
                    break

        now = records.now_str()
        record = dict(fields)
        record['id'] = _id
        record['created_at'] = record.get('created_at') or now
        record['updated_at'] = now
        items.append(record)

        counters[kind] = counter
        writes = {
            STORAGE_KEYS[kind]: items,
            StorageKey.Counters: counters,
        }
        if track:
            writes[StorageKey.Pending] = self._with_pending(kind, [_id], add=True)
        self._persist(writes)

        logging.debug(f'Created {kind} record {_id}')
        self.bus.publish(kind)
        return copy.deepcopy(record)

    def update(self, kind: Any, _id: Any, partial: Dict[str, Any], track: bool = True) -> Optional[Dict[str, Any]]:
        """Merge partial into an existing record.

        Args:
            kind: The collection.
            _id: Identifier of the record to update.
            partial: Fields to overwrite. ``id`` cannot be changed.
            track: Mark the record as changed since the last push.

        Returns:
            A copy of the updated record, or None if no record has this id or
            the id is malformed. A missing record is never created.

        Raises:
            status.ValidationException: If partial holds invalid values.
        """
        kind = self._collection(kind)
        partial = records.validate(kind, partial, partial=True)
        try:
            _id = records.coerce_id(kind, _id)
        except status.ValidationException:
            logging.warning(f'Cannot update {kind} record {_id!r}: not a valid id')
            return None

        if 'id' in partial:
            if partial['id'] is not None and partial['id'] != _id:
                logging.warning(f'Ignoring attempt to change {kind} id {_id} to {partial["id"]}')
            partial.pop('id')

        items = self._load(kind)
        i = self._index(items, _id)
        if i is None:
            logging.warning(f'Cannot update {kind} record {_id}: not found')
            return None

        record = dict(items[i])
        record.update(partial)
        record['updated_at'] = records.now_str()
        items[i] = record

        writes = {STORAGE_KEYS[kind]: items}
        if track:
            writes[StorageKey.Pending] = self._with_pending(kind, [_id], add=True)
        self._persist(writes)

        logging.debug(f'Updated {kind} record {_id}')
        self.bus.publish(kind)
        return copy.deepcopy(record)

    def delete(self, kind: Any, _id: Any) -> bool:
        """Remove a record. Deleting an absent id succeeds silently.

        Returns:
            True if a record was removed.
        """
        kind = self._collection(kind)
        try:
            _id = records.coerce_id(kind, _id)
        except status.ValidationException:
            return False

        items = self._load(kind)
        i = self._index(items, _id)
        if i is None:
            logging.debug(f'{kind} record {_id} already absent')
            return False

        del items[i]
        self._persist({
            STORAGE_KEYS[kind]: items,
            StorageKey.Pending: self._with_pending(kind, [_id], add=False),
        })

        logging.debug(f'Deleted {kind} record {_id}')
        self.bus.publish(kind)
        return True

    def _persist(self, writes: Dict[StorageKey, Any]) -> None:
        self.database.set_items({k: dumps(v) for k, v in writes.items()})

    def _with_pending(self, kind: records.Kind, ids: Iterable[Any], add: bool) -> Dict[str, List[Any]]:
        pending = self._pending()
        current = list(pending.get(kind, []))
        for _id in ids:
            if add and _id not in current:
                current.append(_id)
            elif not add and _id in current:
                current.remove(_id)
        pending[kind] = current
        return pending

    def pending(self, kind: Any) -> Set[Any]:
        """Return ids of kind changed locally since they were last pushed."""
        kind = self._collection(kind)
        return {records.coerce_id(kind, i) for i in self._pending().get(kind, [])}

    def clear_pending(self, kind: Any, ids: Iterable[Any]) -> None:
        """Forget the pending mark of ids. Publishes nothing: records are unchanged."""
        kind = self._collection(kind)
        ids = [records.coerce_id(kind, i) for i in ids]
        if not ids:
            return
        self.database.set_json(StorageKey.Pending, self._with_pending(kind, ids, add=False))

    def pending_count(self) -> int:
        return sum(len(v) for v in self._pending().values())

    def get_user(self) -> Optional[Dict[str, Any]]:
        """Return the user profile record, or None."""
        return self.database.get_json(StorageKey.User)

    def update_user(self, partial: Dict[str, Any], track: bool = True) -> Dict[str, Any]:
        """Merge partial into the user profile, creating it if there is none.

        Raises:
            status.ValidationException: If the fields are invalid, or a new profile lacks an email.
        """
        current = self.get_user()
        fields = records.validate(records.Kind.User, partial, partial=current is not None)
        now = records.now_str()

        user = dict(current or {'created_at': now})
        user.update(fields)
        user['updated_at'] = now

        writes = {StorageKey.User: user}
        if track:
            writes[StorageKey.Pending] = self._with_pending(records.Kind.User, [user.get('id')], add=True)
        self._persist(writes)

        self.bus.publish(records.Kind.User)
        return copy.deepcopy(user)

    def user_pending(self) -> bool:
        return bool(self._pending().get(records.Kind.User))

    def clear_user_pending(self) -> None:
        pending = self._pending()
        if pending.pop(records.Kind.User, None) is not None:
            self.database.set_json(StorageKey.Pending, pending)

    def get_flag(self, key: StorageKey, default: Optional[str] = None) -> Optional[str]:
        return self.database.get_item(key, default)

    def set_flag(self, key: StorageKey, value: Any) -> None:
        self.database.set_item(key, str(value))

    def remove_flag(self, key: StorageKey) -> None:
        self.database.remove_item(key)

    def seed_defaults(self) -> bool:
        """Write the default profile, categories and assets on first run.

        Returns:
            True if the defaults were written, False if storage was already initialized.
        """
        if self.database.get_item(StorageKey.User) is not None:
            return False

        logging.info('Initializing local storage with default records')
        now = records.now_str()

        def stamped(items):
            return [dict(r, created_at=now, updated_at=now) for r in items]

        categories = stamped(records.default_categories())
        assets = stamped(records.default_assets())
        self._persist({
            StorageKey.User: dict(records.default_user(), created_at=now, updated_at=now),
            StorageKey.Categories: categories,
            StorageKey.Transactions: [],
            StorageKey.Investments: [],
            StorageKey.Goals: [],
            StorageKey.Assets: assets,
            StorageKey.Transfers: [],
            StorageKey.Counters: {
                records.Kind.Categories: len(categories),
                records.Kind.Assets: len(assets),
            },
            StorageKey.Pending: {},
        })
        return True
