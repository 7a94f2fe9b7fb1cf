"""Sync engine: push local records to the remote service and pull them back.

Push uploads records one at a time, keyed by ``(id, user_id)``, so pushing an
unchanged record again is a no-op on the remote side. Pull fetches every row
the signed-in user owns and applies it to the store with create-or-update;
remote fields win. Both halves report a :class:`SyncResult` instead of raising,
and a partial failure does not roll back the records that did sync.

Deletions are not propagated: there is no tombstone, so a record deleted on
this device can reappear after a pull if the remote still has it.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore

from . import records
from . import service
from .database import StorageKey
from .remote import RemoteService
from .store import RecordStore
from ..settings import locale
from ..status import status

CONFLICT_KEY: Tuple[str, ...] = ('id', records.OWNER_COLUMN)
PROFILE_CONFLICT_KEY: Tuple[str, ...] = ('id',)

NO_USER_MESSAGE = 'No authenticated user found'

# Fields the store rewrites on every mutation; ignored when comparing records
VOLATILE_FIELDS = ('updated_at',)


class PushPolicy(enum.StrEnum):
    """Which local records a push uploads."""
    All = 'all'
    Pending = 'pending'


@dataclass
class SyncResult:
    """Outcome of one push or pull."""
    operation: str
    success: bool
    message: str
    synced: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def _same(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    keys = (set(a) | set(b)) - set(VOLATILE_FIELDS)
    return all(a.get(k) == b.get(k) for k in keys)


class SyncAPI(QtCore.QObject):
    """Push and pull records between the :class:`RecordStore` and a :class:`RemoteService`.

    All store access happens on the calling thread. Only the remote calls go
    through ``run``, which in the application moves them to a worker thread.

    Args:
        store: The local record store.
        remote: The remote record service.
        settings: Optional settings providing ``push_policy`` and ``network_timeout_seconds``.
        run: Executes a blocking callable and returns its result.
    """
    pushFinished = QtCore.Signal(object)  # SyncResult
    pullFinished = QtCore.Signal(object)  # SyncResult

    def __init__(self, store: RecordStore, remote: RemoteService, settings=None,
                 run: Callable[..., Any] = service.start_asynchronous,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self.remote = remote
        self.settings = settings
        self.run = run

    @property
    def policy(self) -> PushPolicy:
        """The configured push policy for routine pushes."""
        if self.settings is None:
            return PushPolicy.Pending
        return PushPolicy(self.settings['push_policy'])

    @property
    def timeout(self) -> int:
        if self.settings is None:
            return service.TOTAL_TIMEOUT
        return self.settings['network_timeout_seconds']

    def needs_initial_sync(self) -> bool:
        """True until a push has fully succeeded on this device since the last sign-in."""
        return self.store.get_flag(StorageKey.DataSynced) is None

    def has_pending_changes(self) -> bool:
        return self.store.pending_count() > 0

    def _snapshot(self, policy: PushPolicy) -> List[Tuple[records.Kind, Dict[str, Any]]]:
        items = []
        for kind in records.COLLECTIONS:
            pending = self.store.pending(kind) if policy == PushPolicy.Pending else None
            for record in self.store.list(kind):
                if pending is None or record['id'] in pending:
                    items.append((kind, record))

        user = self.store.get_user()
        if user and (policy == PushPolicy.All or self.store.user_pending()):
            items.append((records.Kind.User, user))
        return items

    def _push_remote(self, items: List[Tuple[records.Kind, Dict[str, Any]]]):
        """Upload items. Runs in a worker thread and does not touch the store."""
        user = self.remote.get_current_user()
        if user is None:
            return None, []

        outcomes = []
        for kind, record in items:
            try:
                if kind == records.Kind.User:
                    profile = dict(record, id=user.id, email=record.get('email') or user.email)
                    row = records.to_remote(kind, profile, user.id)
                    self.remote.upsert(records.PROFILES_COLLECTION, row, PROFILE_CONFLICT_KEY)
                else:
                    row = records.to_remote(kind, record, user.id)
                    self.remote.upsert(kind.value, row, CONFLICT_KEY)
                outcomes.append((kind, record, None))
            except status.BaseStatusException as ex:
                outcomes.append((kind, record, ex))
        return user, outcomes

    def push(self, policy: Optional[PushPolicy] = None) -> SyncResult:
        """Upload local records to the remote service.

        Args:
            policy: Which records to upload. Defaults to :attr:`PushPolicy.All`
                while the initial sync is outstanding, otherwise to the configured policy.

        Returns:
            The push result. Never raises for network or authentication failures.
        """
        if policy is None:
            policy = PushPolicy.All if self.needs_initial_sync() else self.policy
        policy = PushPolicy(policy)

        items = self._snapshot(policy)
        logging.info(f'Pushing {len(items)} record(s) (policy: {policy})')

        try:
            user, outcomes = self.run(self._push_remote, items, total_timeout=self.timeout)
        except status.BaseStatusException as ex:
            result = SyncResult('push', False, f'Push failed: {ex.detail or ex.status_message}',
                                failed=len(items), errors=[str(ex)])
            self.pushFinished.emit(result)
            return result

        if user is None:
            logging.warning(f'Push skipped: {NO_USER_MESSAGE}')
            result = SyncResult('push', False, NO_USER_MESSAGE)
            self.pushFinished.emit(result)
            return result

        synced, errors = 0, []
        confirmed: Dict[records.Kind, List[Any]] = {}
        for kind, record, error in outcomes:
            if error is not None:
                errors.append(f'{kind} {record.get("id")}: {error}')
                continue
            synced += 1
            if kind == records.Kind.User:
                current = self.store.get_user()
                if current is not None and _same(current, record):
                    self.store.clear_user_pending()
                continue
            # A record edited while the push was running stays pending
            current = self.store.get(kind, record['id'])
            if current is not None and _same(current, record):
                confirmed.setdefault(kind, []).append(record['id'])

        for kind, ids in confirmed.items():
            self.store.clear_pending(kind, ids)

        failed = len(errors)
        if failed == 0:
            self.store.set_flag(StorageKey.DataSynced, 'true')
            self.store.set_flag(StorageKey.LastSync, records.now_str())
            result = SyncResult('push', True, f'Pushed {synced} record(s)', synced=synced)
        else:
            for e in errors:
                logging.error(f'Push error: {e}')
            result = SyncResult('push', False, f'Pushed {synced} record(s), {failed} failed',
                                synced=synced, failed=failed, errors=errors)

        logging.info(result.message)
        self.pushFinished.emit(result)
        return result

    def _pull_remote(self):
        """Fetch remote rows. Runs in a worker thread and does not touch the store."""
        user = self.remote.get_current_user()
        if user is None:
            return None, {}, []
        fetched = {kind: self.remote.select_all(kind.value, user.id) for kind in records.COLLECTIONS}
        profiles = self.remote.select_all(records.PROFILES_COLLECTION, user.id)
        return user, fetched, profiles

    def pull(self) -> SyncResult:
        """Apply every remote record owned by the signed-in user to the store.

        Existing ids are updated, new ids are created, always with remote
        fields winning and without marking the records as pending. Records
        with local changes not yet pushed are left alone. The profile of the
        signed-in user, including the preferred currency, is restored the same
        way. Asset balances are not adjusted here; callers reconcile derived
        state once afterwards.

        Returns:
            The pull result. Never raises for network or authentication failures.
        """
        try:
            user, fetched, profiles = self.run(self._pull_remote, total_timeout=self.timeout)
        except status.BaseStatusException as ex:
            result = SyncResult('pull', False, f'Pull failed: {ex.detail or ex.status_message}',
                                errors=[str(ex)])
            self.pullFinished.emit(result)
            return result

        if user is None:
            logging.warning(f'Pull skipped: {NO_USER_MESSAGE}')
            result = SyncResult('pull', False, NO_USER_MESSAGE)
            self.pullFinished.emit(result)
            return result

        synced, errors = 0, []
        profile = next((p for p in profiles if p.get('id') == user.id), None)
        if profile is not None:
            try:
                self._apply_profile(profile)
                synced += 1
            except status.BaseStatusException as ex:
                errors.append(f'profile {user.id}: {ex}')

        for kind, rows in fetched.items():
            pending = self.store.pending(kind)
            for row in rows:
                try:
                    self._apply(kind, row, pending)
                    synced += 1
                except status.BaseStatusException as ex:
                    errors.append(f'{kind} {row.get("id")}: {ex}')

        failed = len(errors)
        self.store.set_flag(StorageKey.LastSync, records.now_str())
        if failed == 0:
            result = SyncResult('pull', True, f'Pulled {synced} record(s)', synced=synced)
        else:
            for e in errors:
                logging.error(f'Pull error: {e}')
            result = SyncResult('pull', False, f'Pulled {synced} record(s), {failed} failed',
                                synced=synced, failed=failed, errors=errors)

        logging.info(result.message)
        self.pullFinished.emit(result)
        return result

    def _apply(self, kind: records.Kind, row: Dict[str, str], pending) -> None:
        fields = records.from_remote(kind, row)
        _id = fields.get('id')
        if _id is None:
            raise status.ValidationException(f'Remote {kind} row has no id.')

        if _id in pending:
            logging.debug(f'Keeping local changes of {kind} {_id}')
            return

        existing = self.store.get(kind, _id)
        if existing is None:
            self.store.create(kind, fields, track=False)
            return

        if _same(existing, dict(existing, **fields)):
            return
        self.store.update(kind, _id, fields, track=False)

    def _apply_profile(self, row: Dict[str, str]) -> None:
        if self.store.user_pending():
            logging.debug('Keeping local profile changes')
            return

        fields = records.from_remote(records.Kind.User, row)
        currency = fields.get('currency')
        if currency and not locale.is_currency_code(currency):
            logging.warning(f'Ignoring unknown currency "{currency}" in the remote profile')
            fields.pop('currency')
        elif currency and self.store.get_flag(StorageKey.Currency) != currency:
            from .signals import signals
            self.store.set_flag(StorageKey.Currency, currency)
            signals.preferenceChanged.emit(StorageKey.Currency.value, currency)

        current = self.store.get_user()
        if current is not None and _same(current, dict(current, **fields)):
            return
        self.store.update_user(fields, track=False)
