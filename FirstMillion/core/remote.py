"""Remote record service.

:class:`RemoteService` is the contract the sync engine consumes.
:class:`SheetsRemoteService` implements it on a Google spreadsheet: each
collection is a worksheet whose first row holds the column names, and each
record is one row. Values are written with ``valueInputOption=RAW`` so amounts
keep their exact string form.
"""
import abc
import logging
import socket
import ssl
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from googleapiclient.errors import HttpError

from .auth import AuthExpiredError, AuthManager, RemoteUser
from ..settings import lib
from ..status import status


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


class RemoteService(abc.ABC):
    """Multi-device record backend."""

    @abc.abstractmethod
    def upsert(self, collection: str, record: Dict[str, str], conflict_key: Sequence[str]) -> bool:
        """Insert record, or replace the row whose conflict_key columns match.

        Returns:
            True if anything was written, False if an identical row already existed.
        """

    @abc.abstractmethod
    def select_all(self, collection: str, owner: str) -> List[Dict[str, str]]:
        """Return every row of collection owned by owner."""

    @abc.abstractmethod
    def get_current_user(self) -> Optional[RemoteUser]:
        """Return the authenticated user, or None."""

    @abc.abstractmethod
    def on_auth_state_change(self, callback: Callable[[str, Optional[RemoteUser]], None]) -> Callable[[], None]:
        """Call callback with ``(event, user)`` on sign-in and sign-out.

        Returns:
            A function that removes the callback.
        """


def _execute(request: Any, what: str) -> Dict[str, Any]:
    """Execute an API request, mapping transport errors to status exceptions."""
    try:
        return request.execute() or {}
    except HttpError as ex:
        stat: Optional[int] = ex.resp.status if ex.resp else None
        if stat == 401:
            raise status.AuthenticationException(f'Session rejected while {what} (HTTP 401).') from ex
        if stat == 403:
            raise status.NetworkException(
                f'Access denied (HTTP 403) while {what}. '
                'Please share the spreadsheet with your authenticated Google account.'
            ) from ex
        if stat == 404:
            raise status.NetworkException(f'Spreadsheet not found (HTTP 404) while {what}.') from ex
        raise status.NetworkException(f'Error while {what}: {ex}') from ex
    except socket.timeout as ex:
        raise status.NetworkException(f'Timeout error while {what}: {ex}') from ex
    except ssl.SSLError as ex:
        raise status.NetworkException(f'SSL error while {what}: {ex}') from ex
    except ConnectionError as ex:
        raise status.NetworkException(f'Connection error while {what}: {ex}') from ex


class SheetsRemoteService(RemoteService):
    """Google Sheets backed :class:`RemoteService`.

    Args:
        settings: Provides the ``remote.spreadsheet_id`` setting.
        auth_manager: Supplies credentials and the current user.
    """

    def __init__(self, settings: lib.SettingsAPI, auth_manager: AuthManager) -> None:
        self.settings = settings
        self.auth_manager = auth_manager

    @property
    def spreadsheet_id(self) -> str:
        """Spreadsheet ID from settings.

        Raises:
            status.RemoteNotConfiguredException: If no spreadsheet is configured.
        """
        spreadsheet_id = self.settings.get_section('remote').get('spreadsheet_id', '')
        if not spreadsheet_id:
            raise status.RemoteNotConfiguredException
        return spreadsheet_id

    def _service(self) -> Any:
        from . import service
        try:
            return service.get_service(self.auth_manager, 'sheets', 'v4')
        except AuthExpiredError as ex:
            raise status.AuthenticationException(str(ex)) from ex

    def _worksheets(self, svc: Any) -> List[str]:
        result = _execute(
            svc.spreadsheets().get(spreadsheetId=self.spreadsheet_id, fields='sheets(properties(title))'),
            'listing worksheets'
        )
        return [s.get('properties', {}).get('title', '') for s in result.get('sheets', [])]

    def _add_worksheet(self, svc: Any, collection: str, header: List[str]) -> None:
        logging.info(f'Creating worksheet "{collection}"')
        _execute(
            svc.spreadsheets().batchUpdate(
                spreadsheetId=self.spreadsheet_id,
                body={'requests': [{'addSheet': {'properties': {'title': collection}}}]}
            ),
            f'creating worksheet "{collection}"'
        )
        self._write_row(svc, collection, 1, header)

    def _write_row(self, svc: Any, collection: str, row_number: int, values: List[str]) -> None:
        last_col = idx_to_col(len(values) - 1)
        _execute(
            svc.spreadsheets().values().update(
                spreadsheetId=self.spreadsheet_id,
                range=f'{collection}!A{row_number}:{last_col}{row_number}',
                valueInputOption='RAW',
                body={'values': [values]}
            ),
            f'writing row {row_number} of "{collection}"'
        )

    def _read(self, svc: Any, collection: str) -> Tuple[List[str], List[List[str]]]:
        result = _execute(
            svc.spreadsheets().values().get(
                spreadsheetId=self.spreadsheet_id,
                range=collection,
                valueRenderOption='UNFORMATTED_VALUE'
            ),
            f'reading "{collection}"'
        )
        values: List[List[Any]] = result.get('values', [])
        if not values:
            return [], []
        header = [str(h) for h in values[0]]
        rows = [[str(v) for v in row] for row in values[1:]]
        return header, rows

    @staticmethod
    def _as_dict(header: List[str], row: List[str]) -> Dict[str, str]:
        # The API omits trailing empty cells
        return {h: (row[i] if i < len(row) else '') for i, h in enumerate(header)}

    def upsert(self, collection: str, record: Dict[str, str], conflict_key: Sequence[str]) -> bool:
        svc = self._service()

        if collection not in self._worksheets(svc):
            self._add_worksheet(svc, collection, list(record.keys()))
            header, rows = list(record.keys()), []
        else:
            header, rows = self._read(svc, collection)

        missing = [k for k in record if k not in header]
        if missing:
            header = header + missing
            self._write_row(svc, collection, 1, header)

        key = tuple(str(record.get(k, '')) for k in conflict_key)
        values = [str(record.get(h, '')) for h in header]

        for i, row in enumerate(rows):
            existing = self._as_dict(header, row)
            if tuple(existing.get(k, '') for k in conflict_key) != key:
                continue
            if [existing[h] for h in header] == values:
                logging.debug(f'{collection} row {key} unchanged')
                return False
            # Header is row 1, so data row i lives at i + 2
            self._write_row(svc, collection, i + 2, values)
            return True

        _execute(
            svc.spreadsheets().values().append(
                spreadsheetId=self.spreadsheet_id,
                range=f'{collection}!A1',
                valueInputOption='RAW',
                insertDataOption='INSERT_ROWS',
                body={'values': [values]}
            ),
            f'appending to "{collection}"'
        )
        return True

    def select_all(self, collection: str, owner: str) -> List[Dict[str, str]]:
        svc = self._service()
        if collection not in self._worksheets(svc):
            logging.debug(f'Worksheet "{collection}" does not exist yet')
            return []

        header, rows = self._read(svc, collection)
        if 'user_id' not in header:
            logging.warning(f'Worksheet "{collection}" has no user_id column')
            return []
        result = [self._as_dict(header, row) for row in rows if any(row)]
        return [r for r in result if r.get('user_id') == str(owner)]

    def get_current_user(self) -> Optional[RemoteUser]:
        return self.auth_manager.get_current_user()

    def on_auth_state_change(self, callback: Callable[[str, Optional[RemoteUser]], None]) -> Callable[[], None]:
        self.auth_manager.authStateChanged.connect(callback)
        connected = [True]

        def unsubscribe() -> None:
            if connected[0]:
                connected[0] = False
                self.auth_manager.authStateChanged.disconnect(callback)

        return unsubscribe
