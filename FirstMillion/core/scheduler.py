"""Sync scheduler: runs sync cycles on auth transitions and on a timer.

States::

    idle -> checking-auth -> authenticated <-> unauthenticated

The auth check runs off the main thread and is bounded by a single-shot
timer; when it does not resolve in time the scheduler proceeds unauthenticated
with auth status ``skipped``. Entering ``authenticated`` runs one push-then-pull
cycle and starts the periodic timer. Only one cycle runs at a time.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from PySide6 import QtCore

from . import auth
from . import service
from .database import StorageKey
from .derived import DerivedStateCache
from .remote import RemoteService
from .store import RecordStore
from .sync import SyncAPI, SyncResult

AUTH_TIMEOUT_SECONDS: int = 3
SYNC_INTERVAL_MINUTES: int = 10

AUTH_STATUS_AUTHENTICATED = 'authenticated'
AUTH_STATUS_SKIPPED = 'skipped'


class SyncState(enum.StrEnum):
    Idle = 'idle'
    CheckingAuth = 'checking-auth'
    Authenticated = 'authenticated'
    Unauthenticated = 'unauthenticated'


@dataclass
class SyncStatus:
    """Snapshot of the sync state for display."""
    state: SyncState
    in_progress: bool
    last_sync: Optional[str]
    pending_changes: int
    needs_initial_sync: bool
    user: Optional[auth.RemoteUser] = None
    last_result: Optional[SyncResult] = None


class SyncScheduler(QtCore.QObject):
    """Drives sync cycles from auth transitions and a periodic timer.

    Args:
        store: The record store.
        sync: The sync engine.
        remote: Source of the current user and auth state changes.
        derived: Reconciled once after every pull.
        settings: Optional settings providing ``auth_timeout_seconds`` and ``interval_minutes``.
        dispatch: Runs a blocking callable without waiting and reports to callbacks.

    Signals:
        stateChanged (str): The new :class:`SyncState`.
        syncStarted (): A cycle started.
        syncFinished (object): A cycle ended, with the last :class:`SyncResult` or None if skipped.
    """
    stateChanged = QtCore.Signal(str)
    syncStarted = QtCore.Signal()
    syncFinished = QtCore.Signal(object)

    def __init__(self, store: RecordStore, sync: SyncAPI, remote: RemoteService, derived: DerivedStateCache,
                 settings=None, dispatch: Callable[..., Any] = service.dispatch,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self.sync = sync
        self.remote = remote
        self.derived = derived
        self.settings = settings
        self.dispatch = dispatch

        self._state = SyncState.Idle
        self._in_flight = False
        self._user: Optional[auth.RemoteUser] = None
        self._last_result: Optional[SyncResult] = None
        self._check_id = 0
        self._unsubscribe: Optional[Callable[[], None]] = None

        self.auth_timer = QtCore.QTimer(self)
        self.auth_timer.setSingleShot(True)
        self.auth_timer.setInterval(self._auth_timeout() * 1000)

        self.sync_timer = QtCore.QTimer(self)
        self.sync_timer.setInterval(self._interval() * 60 * 1000)

        self._connect_signals()

    def _connect_signals(self) -> None:
        from .signals import signals

        self.auth_timer.timeout.connect(self.on_auth_timeout)
        self.sync_timer.timeout.connect(self.on_tick)
        signals.configSectionChanged.connect(self.on_config_changed)

    def _auth_timeout(self) -> int:
        return self.settings['auth_timeout_seconds'] if self.settings is not None else AUTH_TIMEOUT_SECONDS

    def _interval(self) -> int:
        return self.settings['interval_minutes'] if self.settings is not None else SYNC_INTERVAL_MINUTES

    @QtCore.Slot(str)
    def on_config_changed(self, section: str) -> None:
        if section != 'sync':
            return
        self.auth_timer.setInterval(self._auth_timeout() * 1000)
        self.sync_timer.setInterval(self._interval() * 60 * 1000)
        logging.debug(f'Sync interval set to {self._interval()} minute(s)')

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _set_state(self, state: SyncState) -> None:
        # Every transition cancels the pending auth timeout and the periodic timer
        self.auth_timer.stop()
        self.sync_timer.stop()
        if state == self._state:
            return
        logging.debug(f'Sync state: {self._state} -> {state}')
        self._state = state
        self.stateChanged.emit(state.value)

    def start(self) -> None:
        """Begin the auth check. Safe to call once per application run."""
        if self._unsubscribe is None:
            self._unsubscribe = self.remote.on_auth_state_change(self.on_auth_state_changed)

        self._set_state(SyncState.CheckingAuth)
        self._check_id += 1
        check_id = self._check_id

        self.auth_timer.start()
        self.dispatch(
            self.remote.get_current_user,
            on_result=lambda user: self.on_auth_resolved(check_id, user),
            on_error=lambda err: self.on_auth_failed(check_id, err),
        )

    def stop(self) -> None:
        """Stop all timers and detach from auth state changes."""
        self.auth_timer.stop()
        self.sync_timer.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._set_state(SyncState.Idle)

    def on_auth_resolved(self, check_id: int, user: Optional[auth.RemoteUser]) -> None:
        if check_id != self._check_id:
            return
        if user is not None:
            self._enter_authenticated(user)
        elif self._state == SyncState.CheckingAuth:
            self._enter_unauthenticated()

    def on_auth_failed(self, check_id: int, err: BaseException) -> None:
        if check_id != self._check_id:
            return
        logging.warning(f'Auth check failed, continuing offline: {err}')
        if self._state == SyncState.CheckingAuth:
            self._enter_unauthenticated()

    @QtCore.Slot()
    def on_auth_timeout(self) -> None:
        if self._state != SyncState.CheckingAuth:
            return
        logging.warning(f'Auth check did not finish in {self._auth_timeout()}s, continuing offline')
        self._enter_unauthenticated()

    def on_auth_state_changed(self, event: str, user: Any) -> None:
        logging.debug(f'Auth state changed: {event}')
        if event == auth.SIGNED_IN and user is not None:
            self._enter_authenticated(user)
        elif event == auth.SIGNED_OUT:
            self._sign_out()

    def _enter_authenticated(self, user: auth.RemoteUser) -> None:
        if self._state == SyncState.Authenticated and self._user == user:
            return
        self._set_state(SyncState.Authenticated)
        self._user = user
        self._set_auth_status(AUTH_STATUS_AUTHENTICATED)
        self.run_cycle(force_push=True)
        if self._state == SyncState.Authenticated:
            self.sync_timer.start()

    def _enter_unauthenticated(self) -> None:
        self._set_state(SyncState.Unauthenticated)
        self._user = None
        self._set_auth_status(AUTH_STATUS_SKIPPED)

    def _set_auth_status(self, value: str) -> None:
        from .signals import signals
        self.store.set_flag(StorageKey.AuthStatus, value)
        signals.authStatusChanged.emit(value)

    def _sign_out(self) -> None:
        self._enter_unauthenticated()
        # The next sign-in uploads everything again
        self.store.remove_flag(StorageKey.DataSynced)
        logging.info('Signed out, local data kept')

    @QtCore.Slot()
    def on_tick(self) -> None:
        self.run_cycle(force_push=False)

    def trigger_sync(self) -> Optional[SyncResult]:
        """Run a cycle now (manual refresh).

        Returns:
            The last result of the cycle, or None if it was skipped.
        """
        if self._state != SyncState.Authenticated:
            logging.info('Sync requested while not authenticated, skipped')
            result = SyncResult('sync', False, 'Not signed in')
            self._last_result = result
            return result
        return self.run_cycle(force_push=True)

    def run_cycle(self, force_push: bool = False) -> Optional[SyncResult]:
        """Push (if needed) then pull. Skipped if a cycle is already running.

        Args:
            force_push: Push even when there are no pending changes.

        Returns:
            The pull result, the failed push result, or None if the cycle was skipped.
        """
        if self._in_flight:
            logging.info('Sync already in progress, cycle skipped')
            return None

        self._in_flight = True
        self.syncStarted.emit()
        self._emit_status()
        result = None
        try:
            if force_push or self.sync.needs_initial_sync() or self.sync.has_pending_changes():
                result = self.sync.push()
                if not result.success:
                    logging.warning(f'Push did not fully succeed, pull skipped: {result.message}')
                    return result

            result = self.sync.pull()
            self.derived.reconcile()
            return result
        finally:
            self._in_flight = False
            self._last_result = result
            self.syncFinished.emit(result)
            self._emit_status()

    def _emit_status(self) -> None:
        from .signals import signals
        signals.syncStatusChanged.emit(self.get_sync_status())

    def get_sync_status(self) -> SyncStatus:
        """Return a snapshot of the current sync state."""
        return SyncStatus(
            state=self._state,
            in_progress=self._in_flight,
            last_sync=self.store.get_flag(StorageKey.LastSync),
            pending_changes=self.store.pending_count(),
            needs_initial_sync=self.sync.needs_initial_sync(),
            user=self._user,
            last_result=self._last_result,
        )
