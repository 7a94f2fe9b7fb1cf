"""
Local SQLite storage for FirstMillion records and flags.

This module provides a durable, string-keyed and string-valued store kept on
the device. Every collection, the user profile and each scalar flag lives under
a :class:`StorageKey`. The schema is verified on construction: missing tables
are created and an invalid metadata table is rebuilt, but stored records are
never dropped.
"""

import datetime
import decimal
import enum
import json
import logging
import sqlite3
import time
from typing import Any, Optional, Dict, List

from PySide6 import QtCore

from ..settings import lib
from ..status import status

SCHEMA_VERSION = 1

META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'created': 'TEXT',
    'schema_version': 'INTEGER',
    'last_write': 'TEXT',
}

STORAGE_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Storage = 'storage'


class StorageKey(enum.StrEnum):
    """Every key persisted in the storage table."""
    Categories = 'firstMillionCategories'
    Transactions = 'firstMillionTransactions'
    Investments = 'firstMillionInvestments'
    Goals = 'firstMillionGoals'
    Assets = 'firstMillionAssets'
    Transfers = 'firstMillionAssetTransfers'
    User = 'firstMillionUser'
    OnboardingCompleted = 'firstMillionOnboardingCompleted'
    AuthStatus = 'firstMillionAuthStatus'
    DataSynced = 'firstMillionDataSynced'
    LastSync = 'firstMillionLastSync'
    Currency = 'firstMillionCurrency'
    Theme = 'firstMillionTheme'
    Counters = 'firstMillionCounters'
    Pending = 'firstMillionPending'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string."""
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class JSONEncoder(json.JSONEncoder):
    """Writes Decimal values as strings so no precision is lost on disk."""

    def default(self, o):
        if isinstance(o, decimal.Decimal):
            return str(o)
        if isinstance(o, (set, frozenset)):
            return sorted(o)
        return super().default(o)


def dumps(value: Any) -> str:
    return json.dumps(value, cls=JSONEncoder, ensure_ascii=False)


class DatabaseAPI(QtCore.QObject):
    """Key-value storage API. Handles schema creation, validation, and data access.

    Args:
        paths: Provides ``db_path``, the sqlite file location.
        parent: Optional Qt parent.
    """

    def __init__(self, paths: lib.ConfigPaths, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.db_path = paths.db_path
        self._initialize_schema_if_needed()

    def _initialize_schema_if_needed(self) -> None:
        """
        Ensures the database file and schema are usable without discarding stored records.

        Missing tables are created. The metatable only holds bookkeeping and is
        recreated if its columns are invalid. The storage table holds the user's
        records and is never dropped.

        Raises:
            status.StorageInvalidException: If the storage table has an unexpected
                schema, or the database cannot be opened.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()

            if not self._columns_valid_in_conn(conn, Table.Meta.value, META_SCHEMA):
                logging.info(f'Recreating the "{Table.Meta.value}" table.')
                conn.execute(f'DROP TABLE IF EXISTS {Table.Meta.value}')

            if (self._table_exists_in_conn(conn, Table.Storage.value) and
                    not self._columns_valid_in_conn(conn, Table.Storage.value, STORAGE_SCHEMA)):
                raise status.StorageInvalidException(
                    f'Table "{Table.Storage.value}" in {self.db_path} has an unexpected schema. '
                    'Stored records were left untouched.'
                )

            for table, schema in ((Table.Meta, META_SCHEMA), (Table.Storage, STORAGE_SCHEMA)):
                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in schema.items())
                conn.execute(f'CREATE TABLE IF NOT EXISTS {table.value} ({cols_sql})')

            conn.execute(
                f'INSERT OR IGNORE INTO {Table.Meta.value} (meta_id, created, schema_version, last_write) '
                'VALUES (1, ?, ?, ?)',
                (now_str(), SCHEMA_VERSION, now_str())
            )
            conn.commit()
            logging.debug('Database schema is valid.')

        except sqlite3.Error as e:
            logging.error(f'SQLite error during schema initialization: {e}', exc_info=True)
            raise status.StorageInvalidException(f'Could not open the storage database: {e}') from e
        finally:
            if conn:
                conn.close()

    def connection(self) -> sqlite3.Connection:
        """Return a new connection to the storage database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @staticmethod
    def _table_exists_in_conn(conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @classmethod
    def _columns_valid_in_conn(cls, conn: sqlite3.Connection, table_name: str, schema: Dict[str, str]) -> bool:
        if not cls._table_exists_in_conn(conn, table_name):
            logging.info(f'Table "{table_name}" is missing.')
            return False

        cursor = conn.execute(f'PRAGMA table_info({table_name})')
        current_columns = {row[1] for row in cursor.fetchall()}
        missing_cols = set(schema.keys()) - current_columns
        if missing_cols:
            logging.warning(
                f'Table "{table_name}" schema is invalid. Missing columns: {missing_cols}.'
            )
            return False
        return True

    def get_item(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Return the raw string stored under key, or default if absent."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            row = conn.execute(
                f'SELECT value FROM {Table.Storage.value} WHERE key=?', (str(key),)
            ).fetchone()
            return row[0] if row else default
        except sqlite3.Error as e:
            raise status.StorageInvalidException(f'Failed to read "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def set_item(self, key: str, value: str) -> None:
        """Persist a raw string value under key."""
        self.set_items({key: value})

    def set_items(self, items: Dict[str, str]) -> None:
        """Persist several keys in a single transaction.

        Either every key is written or, on error, none of them is.

        Args:
            items: Mapping of storage keys to string values.

        Raises:
            status.StorageInvalidException: If the write fails.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.executemany(
                    f'INSERT OR REPLACE INTO {Table.Storage.value} (key, value) VALUES (?, ?)',
                    [(str(k), v) for k, v in items.items()]
                )
                conn.execute(
                    f'UPDATE {Table.Meta.value} SET last_write=? WHERE meta_id=1', (now_str(),)
                )
        except sqlite3.Error as e:
            raise status.StorageInvalidException(f'Failed to write {list(items)}: {e}') from e
        finally:
            if conn:
                conn.close()

    def remove_item(self, key: str) -> None:
        """Remove key from storage. Removing a missing key is not an error."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            with conn:
                conn.execute(f'DELETE FROM {Table.Storage.value} WHERE key=?', (str(key),))
        except sqlite3.Error as e:
            raise status.StorageInvalidException(f'Failed to remove "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

    def keys(self) -> List[str]:
        """Return all keys currently stored."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            return [row[0] for row in conn.execute(f'SELECT key FROM {Table.Storage.value} ORDER BY key')]
        finally:
            if conn:
                conn.close()

    def get_json(self, key: str, default: Any = None) -> Any:
        """Return the decoded JSON value stored under key.

        Raises:
            status.StorageInvalidException: If the stored value is not valid JSON.
        """
        raw = self.get_item(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise status.StorageInvalidException(f'Value of "{key}" is not valid JSON: {e}') from e

    def set_json(self, key: str, value: Any) -> None:
        """Encode value as JSON (Decimals as strings) and persist it under key."""
        self.set_item(key, dumps(value))

    def delete(self) -> None:
        """Delete the local database file, retrying on failure.

        Raises:
            status.StorageInvalidException: If unable to remove the database file after retries.
        """
        db_file = self.db_path
        if not db_file.exists():
            logging.debug('No storage database found to delete.')
            return

        max_attempts = 5
        attempt = 0
        wait_seconds = 0.2

        while attempt < max_attempts:
            attempt += 1
            try:
                db_file.unlink()
                logging.info(f'Storage database removed: {db_file}')
                return
            except OSError as ex:
                logging.error(f'Error removing storage DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    logging.debug(f'Retrying in {wait_seconds} seconds...')
                    time.sleep(wait_seconds)
                    wait_seconds *= 1.5
                else:
                    raise status.StorageInvalidException(
                        f'Failed to remove storage DB {db_file} after {max_attempts} attempts: {ex}'
                    ) from ex

    def reset(self) -> None:
        """Delete the database file and recreate an empty schema."""
        logging.debug('Resetting local storage database.')
        self.delete()
        self._initialize_schema_if_needed()

    def stamp(self) -> None:
        """Update the last write timestamp in the metadata table."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            conn.execute(f'UPDATE {Table.Meta.value} SET last_write=? WHERE meta_id=1', (now_str(),))
            conn.commit()
        finally:
            if conn:
                conn.close()

    def get_stamp(self) -> Optional[datetime.datetime]:
        """Retrieve the last write timestamp.

        Returns:
            Optional[datetime.datetime]: Last write datetime object, or None if not set/invalid.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = self.connection()
            if not self._table_exists_in_conn(conn, Table.Meta.value):
                logging.warning(f'Metatable "{Table.Meta.value}" not found when getting stamp.')
                return None

            row = conn.execute(f'SELECT last_write FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
            if row and row[0]:
                try:
                    return datetime.datetime.fromisoformat(row[0])
                except ValueError:
                    logging.warning(f'Invalid last write date format in DB: {row[0]}.')
            return None
        finally:
            if conn:
                conn.close()
