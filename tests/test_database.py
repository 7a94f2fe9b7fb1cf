"""
Integration tests for FirstMillion.core.database
(using unittest, not pytest).
"""
import datetime
import decimal
import sqlite3
from unittest.mock import patch

from FirstMillion.core.database import (
    META_SCHEMA,
    DatabaseAPI,
    StorageKey,
    Table,
    dumps,
)
from FirstMillion.status import status
from tests.base import BaseTestCase


class DatabaseAPITests(BaseTestCase):

    def test_schema_created(self):
        conn = self.database.connection()
        try:
            self.assertTrue(DatabaseAPI._table_exists_in_conn(conn, Table.Meta.value))
            self.assertTrue(DatabaseAPI._table_exists_in_conn(conn, Table.Storage.value))
            self.assertTrue(DatabaseAPI._columns_valid_in_conn(conn, Table.Meta.value, META_SCHEMA))
        finally:
            conn.close()

    def test_get_missing_returns_default(self):
        self.assertIsNone(self.database.get_item('missing'))
        self.assertEqual(self.database.get_item('missing', 'fallback'), 'fallback')

    def test_set_get_remove_item(self):
        self.database.set_item(StorageKey.Theme, 'dark')
        self.assertEqual(self.database.get_item(StorageKey.Theme), 'dark')

        self.database.set_item(StorageKey.Theme, 'light')
        self.assertEqual(self.database.get_item(StorageKey.Theme), 'light')

        self.database.remove_item(StorageKey.Theme)
        self.assertIsNone(self.database.get_item(StorageKey.Theme))

        # Removing again is not an error
        self.database.remove_item(StorageKey.Theme)

    def test_set_items_writes_all_keys(self):
        self.database.set_items({
            StorageKey.Currency: 'EUR',
            StorageKey.Theme: 'dark',
        })
        self.assertEqual(self.database.get_item(StorageKey.Currency), 'EUR')
        self.assertEqual(self.database.get_item(StorageKey.Theme), 'dark')
        self.assertIn(StorageKey.Currency.value, self.database.keys())

    def test_json_keeps_decimal_precision(self):
        self.database.set_json('numbers', {'amount': decimal.Decimal('0.10'), 'ids': {3, 1}})
        self.assertEqual(self.database.get_item('numbers'), '{"amount": "0.10", "ids": [1, 3]}')
        self.assertEqual(self.database.get_json('numbers'), {'amount': '0.10', 'ids': [1, 3]})

    def test_invalid_json_raises(self):
        self.database.set_item(StorageKey.Transactions, 'not json')
        with self.assertRaises(status.StorageInvalidException):
            self.database.get_json(StorageKey.Transactions)

    def test_values_survive_reopen(self):
        self.database.set_item(StorageKey.Currency, 'GBP')
        reopened = DatabaseAPI(self.settings)
        self.assertEqual(reopened.get_item(StorageKey.Currency), 'GBP')

    def drop_table(self, table: str) -> None:
        conn = sqlite3.connect(str(self.settings.db_path))
        try:
            conn.execute(f'DROP TABLE {table}')
            conn.commit()
        finally:
            conn.close()

    def test_missing_metatable_keeps_records(self):
        self.database.set_item(StorageKey.Currency, 'GBP')
        self.drop_table(Table.Meta.value)

        reopened = DatabaseAPI(self.settings)
        self.assertEqual(reopened.get_item(StorageKey.Currency), 'GBP')
        self.assertIsNotNone(reopened.get_stamp())

    def test_missing_storage_table_created(self):
        self.drop_table(Table.Storage.value)
        reopened = DatabaseAPI(self.settings)
        self.assertEqual(reopened.keys(), [])
        reopened.set_item(StorageKey.Theme, 'dark')
        self.assertEqual(reopened.get_item(StorageKey.Theme), 'dark')

    def test_invalid_storage_table_is_not_dropped(self):
        self.drop_table(Table.Storage.value)
        conn = sqlite3.connect(str(self.settings.db_path))
        try:
            conn.execute(f'CREATE TABLE {Table.Storage.value} (name TEXT, data TEXT)')
            conn.execute(f'INSERT INTO {Table.Storage.value} VALUES (?, ?)', ('old', 'record'))
            conn.commit()
        finally:
            conn.close()

        with self.assertRaises(status.StorageInvalidException):
            DatabaseAPI(self.settings)

        conn = sqlite3.connect(str(self.settings.db_path))
        try:
            rows = conn.execute(f'SELECT name, data FROM {Table.Storage.value}').fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [('old', 'record')])

    def test_sqlite_error_keeps_database_file(self):
        self.database.set_item(StorageKey.Currency, 'GBP')

        with patch.object(DatabaseAPI, 'connection', side_effect=sqlite3.OperationalError('database is locked')):
            with self.assertRaises(status.StorageInvalidException):
                DatabaseAPI(self.settings)

        self.assertTrue(self.settings.db_path.exists())
        self.assertEqual(DatabaseAPI(self.settings).get_item(StorageKey.Currency), 'GBP')

    def test_delete_and_reset(self):
        self.database.set_item(StorageKey.Currency, 'GBP')
        self.database.reset()
        self.assertTrue(self.settings.db_path.exists())
        self.assertEqual(self.database.keys(), [])

        self.database.delete()
        self.assertFalse(self.settings.db_path.exists())
        # Deleting a missing file is a no-op
        self.database.delete()

    def test_stamp_updates_last_write(self):
        self.database.stamp()
        stamp = self.database.get_stamp()
        self.assertIsInstance(stamp, datetime.datetime)
        self.assertIsNotNone(stamp.tzinfo)

    def test_dumps_sorts_sets(self):
        self.assertEqual(dumps({'a': {2, 1}}), '{"a": [1, 2]}')
