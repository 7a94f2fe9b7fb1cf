"""Tests for FirstMillion.core.remote.

The Google Sheets API client is replaced by :class:`FakeBook`, an in-memory
spreadsheet that answers the same resource calls the service makes.
"""
import re
import socket
from typing import Dict, List
from unittest.mock import patch

from FirstMillion.core import auth
from FirstMillion.core import service
from FirstMillion.core.auth import AuthManager, RemoteUser
from FirstMillion.core.remote import SheetsRemoteService, idx_to_col
from FirstMillion.core.sync import CONFLICT_KEY
from FirstMillion.status import status
from tests.base import BaseTestCase, http_error

SPREADSHEET_ID = 'spreadsheet-1'


class FakeRequest:
    def __init__(self, func):
        self.func = func

    def execute(self):
        return self.func()


class FakeValues:
    def __init__(self, book: 'FakeBook') -> None:
        self.book = book

    def get(self, spreadsheetId, range, valueRenderOption=None):
        return FakeRequest(lambda: self.book.read(range))

    def update(self, spreadsheetId, range, valueInputOption, body):
        def _update():
            self.book.value_calls.append(('update', range))
            title, cells = range.split('!')
            row_number = int(re.match(r'[A-Z]+(\d+)', cells).group(1))
            rows = self.book.sheets[title]
            while len(rows) < row_number:
                rows.append([])
            rows[row_number - 1] = list(body['values'][0])
            return {}

        return FakeRequest(_update)

    def append(self, spreadsheetId, range, valueInputOption, insertDataOption, body):
        def _append():
            self.book.value_calls.append(('append', range))
            title = range.split('!')[0]
            self.book.sheets[title].extend(list(r) for r in body['values'])
            return {}

        return FakeRequest(_append)


class FakeSpreadsheets:
    def __init__(self, book: 'FakeBook') -> None:
        self.book = book

    def get(self, spreadsheetId, fields=None):
        return FakeRequest(
            lambda: {'sheets': [{'properties': {'title': t}} for t in self.book.sheets]}
        )

    def batchUpdate(self, spreadsheetId, body):
        def _batch():
            for request in body['requests']:
                self.book.sheets[request['addSheet']['properties']['title']] = []
            return {}

        return FakeRequest(_batch)

    def values(self):
        return FakeValues(self.book)


class FakeBook:
    """An in-memory spreadsheet: worksheet title to list of rows."""

    def __init__(self) -> None:
        self.sheets: Dict[str, List[List[str]]] = {}
        self.value_calls: List[tuple] = []

    def spreadsheets(self):
        return FakeSpreadsheets(self)

    def read(self, title):
        rows = self.sheets.get(title, [])
        return {'values': [list(r) for r in rows]} if rows else {}


class FailingRequest:
    def __init__(self, error):
        self.error = error

    def execute(self):
        raise self.error


def row(_id, amount='10', owner='user-1'):
    return {
        'id': str(_id), 'category_id': '3', 'kind': 'expense', 'amount': amount,
        'occurred_on': '2024-05-01', 'user_id': owner,
    }


class SheetsRemoteServiceTests(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.settings.set_section('remote', {'spreadsheet_id': SPREADSHEET_ID})
        self.auth_manager = AuthManager(self.settings)
        self.book = FakeBook()
        patch.object(service, 'get_service', return_value=self.book).start()
        self.sheets = SheetsRemoteService(self.settings, self.auth_manager)

    def test_idx_to_col(self):
        self.assertEqual(idx_to_col(0), 'A')
        self.assertEqual(idx_to_col(25), 'Z')
        self.assertEqual(idx_to_col(26), 'AA')
        self.assertEqual(idx_to_col(27), 'AB')

    def test_not_configured(self):
        self.settings.set_section('remote', {'spreadsheet_id': ''})
        with self.assertRaises(status.RemoteNotConfiguredException):
            self.sheets.upsert('transactions', row(1), CONFLICT_KEY)

    def test_upsert_creates_worksheet_with_header(self):
        self.assertTrue(self.sheets.upsert('transactions', row(1), CONFLICT_KEY))

        rows = self.book.sheets['transactions']
        self.assertEqual(rows[0], list(row(1).keys()))
        self.assertEqual(rows[1], list(row(1).values()))

    def test_upsert_identical_row_writes_nothing(self):
        self.sheets.upsert('transactions', row(1), CONFLICT_KEY)
        calls = len(self.book.value_calls)

        self.assertFalse(self.sheets.upsert('transactions', row(1), CONFLICT_KEY))
        self.assertEqual(len(self.book.value_calls), calls)
        self.assertEqual(len(self.book.sheets['transactions']), 2)

    def test_upsert_replaces_matching_row(self):
        self.sheets.upsert('transactions', row(1), CONFLICT_KEY)
        self.sheets.upsert('transactions', row(2), CONFLICT_KEY)
        self.sheets.upsert('transactions', row(1, amount='99'), CONFLICT_KEY)

        rows = self.book.sheets['transactions']
        self.assertEqual(len(rows), 3)
        self.assertEqual(rows[1][3], '99')
        self.assertIn(('update', 'transactions!A2:F2'), self.book.value_calls)

    def test_conflict_key_includes_owner(self):
        self.sheets.upsert('transactions', row(1, owner='user-1'), CONFLICT_KEY)
        self.sheets.upsert('transactions', row(1, owner='user-2'), CONFLICT_KEY)
        self.assertEqual(len(self.book.sheets['transactions']), 3)

    def test_upsert_extends_header(self):
        self.sheets.upsert('transactions', row(1), CONFLICT_KEY)
        extended = dict(row(2), description='Lunch')
        self.sheets.upsert('transactions', extended, CONFLICT_KEY)

        header = self.book.sheets['transactions'][0]
        self.assertEqual(header[-1], 'description')
        found = self.sheets.select_all('transactions', 'user-1')
        self.assertEqual([r['description'] for r in found], ['', 'Lunch'])

    def test_select_all_filters_owner(self):
        self.sheets.upsert('transactions', row(1, owner='user-1'), CONFLICT_KEY)
        self.sheets.upsert('transactions', row(2, owner='user-2'), CONFLICT_KEY)

        found = self.sheets.select_all('transactions', 'user-2')
        self.assertEqual([r['id'] for r in found], ['2'])

    def test_select_all_missing_worksheet(self):
        self.assertEqual(self.sheets.select_all('goals', 'user-1'), [])

    def test_unformatted_numbers_read_as_strings(self):
        self.book.sheets['transactions'] = [
            ['id', 'amount', 'user_id'],
            [7, 12.5, 'user-1'],
        ]
        found = self.sheets.select_all('transactions', 'user-1')
        self.assertEqual(found, [{'id': '7', 'amount': '12.5', 'user_id': 'user-1'}])

    def test_http_errors_mapped(self):
        cases = [
            (401, status.AuthenticationException),
            (403, status.NetworkException),
            (404, status.NetworkException),
            (500, status.NetworkException),
        ]
        for code, exception in cases:
            with self.subTest(code=code):
                with patch.object(FakeSpreadsheets, 'get', return_value=FailingRequest(http_error(code))):
                    with self.assertRaises(exception):
                        self.sheets.select_all('transactions', 'user-1')

    def test_socket_timeout_mapped(self):
        with patch.object(FakeSpreadsheets, 'get', return_value=FailingRequest(socket.timeout('slow'))):
            with self.assertRaises(status.NetworkException):
                self.sheets.upsert('transactions', row(1), CONFLICT_KEY)

    def test_expired_session_mapped(self):
        patch.object(service, 'get_service', side_effect=auth.AuthExpiredError('expired')).start()
        with self.assertRaises(status.AuthenticationException):
            self.sheets.select_all('transactions', 'user-1')

    def test_current_user_from_auth_manager(self):
        user = RemoteUser(id='abc', email='a@b.c')
        with patch.object(self.auth_manager, 'get_current_user', return_value=user):
            self.assertEqual(self.sheets.get_current_user(), user)

    def test_auth_state_subscription(self):
        events = []

        def on_change(event, user):
            events.append((event, user))

        unsubscribe = self.sheets.on_auth_state_change(on_change)
        self.auth_manager.authStateChanged.emit(auth.SIGNED_OUT, None)
        unsubscribe()
        unsubscribe()
        self.auth_manager.authStateChanged.emit(auth.SIGNED_OUT, None)

        self.assertEqual(events, [(auth.SIGNED_OUT, None)])
