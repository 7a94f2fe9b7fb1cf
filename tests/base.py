"""Unittest base class for creating a clean test environment.

Every test gets its own temporary app data directory, a fresh settings object,
storage database, record store and derived state cache. Remote access goes
through :class:`FakeRemoteService`, an in-memory stand-in that records every call.
"""
import logging
import os
import shutil
import tempfile
import types
import unittest
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import patch

from PySide6 import QtCore
from googleapiclient.errors import HttpError

from FirstMillion.core import ledger
from FirstMillion.core.auth import RemoteUser
from FirstMillion.core.bus import ChangeBus
from FirstMillion.core.database import DatabaseAPI
from FirstMillion.core.derived import DerivedStateCache
from FirstMillion.core.remote import RemoteService
from FirstMillion.core.store import RecordStore
from FirstMillion.core.sync import SyncAPI
from FirstMillion.settings import lib
from FirstMillion.status import status

TEST_USER = RemoteUser(id='remote-user-1', email='someone@example.com')


class FakeRemoteService(RemoteService):
    """In-memory remote backend.

    Attributes:
        tables: Rows per collection.
        calls: ``(operation, collection)`` tuples in call order.
        user: The user reported by :meth:`get_current_user`.
        fail_upsert: Raise NetworkException from every upsert.
        fail_upsert_ids: Raise NetworkException when upserting rows with these ids.
        fail_select: Raise NetworkException from select_all.
        before_upsert: Called with ``(collection, record)`` before each upsert.
    """

    def __init__(self, user: Optional[RemoteUser] = None) -> None:
        self.tables: Dict[str, List[Dict[str, str]]] = {}
        self.calls: List[tuple] = []
        self.writes = 0
        self.user = user
        self.fail_upsert = False
        self.fail_upsert_ids: set = set()
        self.fail_select = False
        self.before_upsert: Optional[Callable[[str, Dict[str, str]], None]] = None
        self.callbacks: List[Callable[[str, Any], None]] = []

    def upsert(self, collection: str, record: Dict[str, str], conflict_key: Sequence[str]) -> bool:
        self.calls.append(('upsert', collection))
        if self.before_upsert is not None:
            self.before_upsert(collection, record)
        if self.fail_upsert or record.get('id') in self.fail_upsert_ids:
            raise status.NetworkException('offline')

        rows = self.tables.setdefault(collection, [])
        key = tuple(record.get(k) for k in conflict_key)
        for i, row in enumerate(rows):
            if tuple(row.get(k) for k in conflict_key) != key:
                continue
            if row == record:
                return False
            rows[i] = dict(record)
            self.writes += 1
            return True

        rows.append(dict(record))
        self.writes += 1
        return True

    def select_all(self, collection: str, owner: str) -> List[Dict[str, str]]:
        self.calls.append(('select', collection))
        if self.fail_select:
            raise status.NetworkException('offline')
        return [dict(r) for r in self.tables.get(collection, []) if r.get('user_id') == owner]

    def get_current_user(self) -> Optional[RemoteUser]:
        return self.user

    def on_auth_state_change(self, callback: Callable[[str, Any], None]) -> Callable[[], None]:
        self.callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: str, user: Optional[RemoteUser]) -> None:
        for callback in list(self.callbacks):
            callback(event, user)

    def operations(self, name: str) -> List[str]:
        return [c for op, c in self.calls if op == name]


def http_error(code: int) -> HttpError:
    """An HttpError carrying the given status code."""
    return HttpError(types.SimpleNamespace(status=code, reason='error'), b'')


def run_now(func: Callable[..., Any], *args: Any, total_timeout: int = None, **kwargs: Any) -> Any:
    """Synchronous replacement for service.start_asynchronous."""
    return func(*args, **kwargs)


def dispatch_now(func: Callable[..., Any], on_result=None, on_error=None, **kwargs: Any) -> None:
    """Synchronous replacement for service.dispatch."""
    try:
        result = func(**kwargs)
    except Exception as ex:
        if on_error:
            on_error(ex)
        return
    if on_result:
        on_result(result)


class DeferredDispatch:
    """A dispatch that never runs the function until told to."""

    def __init__(self) -> None:
        self.pending: List[tuple] = []

    def __call__(self, func: Callable[..., Any], on_result=None, on_error=None, **kwargs: Any) -> None:
        self.pending.append((func, on_result, on_error))

    def resolve(self, result: Any) -> None:
        _, on_result, _ = self.pending.pop(0)
        on_result(result)

    def fail(self, err: BaseException) -> None:
        _, _, on_error = self.pending.pop(0)
        on_error(err)


class BaseTestCase(unittest.TestCase):
    """Base test case that sets up and tears down a temporary app data directory."""

    app_data_dir: str

    def setUp(self) -> None:
        """Set up a clean app data directory and reinitialize all APIs."""
        # Ensure headless Qt
        if 'QT_QPA_PLATFORM' not in os.environ:
            os.environ['QT_QPA_PLATFORM'] = 'offscreen'
            logging.debug('QT_QPA_PLATFORM set to offscreen for headless testing.')

        # Ensure a Qt application is available
        if not QtCore.QCoreApplication.instance():
            QtCore.QCoreApplication([])
            logging.debug('QtCore.QCoreApplication initialized for tests.')

        self.app_data_dir = tempfile.mkdtemp(prefix='firstmillion_test_')
        logging.debug(f'Created test app data directory at {self.app_data_dir}')

        self.settings = lib.SettingsAPI(app_data_dir=self.app_data_dir)
        self.database = DatabaseAPI(self.settings)
        self.bus = ChangeBus()
        self.store = RecordStore(self.database, self.bus)
        self.store.seed_defaults()
        self.derived = DerivedStateCache(self.store)

        self.remote = FakeRemoteService()
        self.sync = SyncAPI(self.store, self.remote, settings=self.settings, run=run_now)

    def tearDown(self) -> None:
        """Remove the test app data directory and any module level state."""
        patch.stopall()
        ledger.shutdown()

        if os.path.isdir(self.app_data_dir):
            shutil.rmtree(self.app_data_dir, ignore_errors=True)
            logging.debug(f'Removed test app data directory {self.app_data_dir}')

    def expense(self, amount: Any = '50', category_id: int = 3, paid_via: Optional[str] = 'cash',
                occurred_on: str = '2024-05-01', **extra: Any) -> Dict[str, Any]:
        """Fields of a valid expense transaction."""
        fields = {
            'category_id': category_id,
            'kind': 'expense',
            'amount': amount,
            'occurred_on': occurred_on,
            'paid_via': paid_via,
        }
        fields.update(extra)
        return fields

    def income(self, amount: Any = '100', category_id: int = 1, received_via: Optional[str] = 'bank',
               occurred_on: str = '2024-05-01', **extra: Any) -> Dict[str, Any]:
        """Fields of a valid income transaction."""
        fields = {
            'category_id': category_id,
            'kind': 'income',
            'amount': amount,
            'occurred_on': occurred_on,
            'received_via': received_via,
        }
        fields.update(extra)
        return fields
