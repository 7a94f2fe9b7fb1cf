"""
Google OAuth2 authentication and credential management.

Provides the :class:`AuthManager`, which loads and refreshes stored credentials,
runs the installed-app OAuth flow in a background thread, and reports the
signed-in user. Auth state changes are announced through
``AuthManager.authStateChanged``.
"""

import dataclasses
import logging
import socket
import ssl
import threading
import time
from typing import Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from PySide6 import QtCore
from googleapiclient.errors import HttpError

from ..settings import lib
from ..status import status

DEFAULT_SCOPES = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/userinfo.email',
    'openid',
]

SIGN_IN_TIMEOUT: int = 120

SIGNED_IN = 'SIGNED_IN'
SIGNED_OUT = 'SIGNED_OUT'


class AuthExpiredError(Exception):
    """Raised when credentials have expired and require interactive refresh."""
    pass


@dataclasses.dataclass(frozen=True)
class RemoteUser:
    """The signed-in account. ``id`` is the owner of every remote row."""
    id: str
    email: str = ''


def save_creds(creds: google.oauth2.credentials.Credentials, path) -> None:
    """
    Save OAuth2 credentials to the given token file.

    Args:
        creds: Credentials to save.
        path (pathlib.Path): Destination file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as token_file:
        token_file.write(creds.to_json())

    logging.debug(f'Credentials saved to {path}.')


class AuthFlowWorker(QtCore.QThread):
    """
    Runs OAuth web flow in a background thread.

    Signals:
        resultReady (object): Emitted with credentials on success.
        errorOccurred (object): Emitted with the exception on failure.
    """
    resultReady = QtCore.Signal(object)
    errorOccurred = QtCore.Signal(object)

    def __init__(self, flow: google_auth_oauthlib.flow.InstalledAppFlow, parent=None):
        super().__init__(parent)
        self.flow = flow
        self.creds = None

    def run(self):
        logging.debug(f'[Thread-{threading.get_ident()}] AuthFlowWorker.run: started at {time.time()}')
        try:
            self.creds = self.flow.run_local_server(port=0)
            if not self.creds or not self.creds.token:
                self.errorOccurred.emit(
                    status.AuthenticationException('Authentication did not complete successfully.')
                )
            else:
                self.resultReady.emit(self.creds)
        except Exception as ex:
            logging.debug(f'[Thread-{threading.get_ident()}] AuthFlowWorker.run: exception: {ex}')
            self.errorOccurred.emit(ex)


class AuthManager(QtCore.QObject):
    """Manages OAuth2 credentials with thread-safe refresh.

    Args:
        settings: Provides the credential and client secret paths.

    Signals:
        authStateChanged (str, object): ``('SIGNED_IN', RemoteUser)`` or ``('SIGNED_OUT', None)``.
    """
    authStateChanged = QtCore.Signal(str, object)

    def __init__(self, settings: lib.SettingsAPI, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.settings = settings
        self._lock = threading.Lock()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None
        self._user: Optional[RemoteUser] = None

    def has_credentials(self) -> bool:
        """True if credentials are loaded or stored on disk."""
        return self._creds is not None or self.settings.creds_path.exists()

    def get_valid_credentials(self) -> google.oauth2.credentials.Credentials:
        """
        Return valid credentials without any UI.

        Raises:
            AuthExpiredError: if no credentials exist or a full interactive flow is required.
            status.AuthenticationException: if an auto-refresh fails.
            status.CredsInvalidException: if stored credentials are corrupt.
        """
        with self._lock:
            if self._creds is None:
                if not self.settings.creds_path.exists():
                    raise AuthExpiredError('No credentials found; interactive authentication required')
                try:
                    self._creds = google.oauth2.credentials.Credentials.from_authorized_user_file(
                        str(self.settings.creds_path))
                except (ValueError, OSError) as ex:
                    # Corrupt credentials are removed so the next sign-in starts clean
                    self.settings.creds_path.unlink(missing_ok=True)
                    raise status.CredsInvalidException('Failed to load credentials') from ex

            if self._creds.expired:
                if self._creds.refresh_token:
                    try:
                        self._creds.refresh(google.auth.transport.requests.Request())
                        save_creds(self._creds, self.settings.creds_path)
                    except Exception as ex:
                        raise status.AuthenticationException('Failed to auto-refresh credentials') from ex
                else:
                    raise AuthExpiredError('Credentials expired; interactive authentication required')

            return self._creds

    def get_current_user(self) -> Optional[RemoteUser]:
        """Return the signed-in account, or None when there is no usable session.

        Blocks on the network the first time it is called after sign-in; run it
        in a worker thread.

        Raises:
            status.AuthenticationException: If the session was rejected.
            status.NetworkException: If the userinfo endpoint could not be reached.
        """
        if self._user is not None:
            return self._user

        try:
            self.get_valid_credentials()
        except (AuthExpiredError, status.CredsInvalidException):
            return None

        from . import service
        client = service.get_service(self, 'oauth2', 'v2')
        try:
            info = client.userinfo().get().execute()
        except HttpError as ex:
            stat = ex.resp.status if ex.resp else None
            if stat in (401, 403):
                raise status.AuthenticationException(f'Session rejected (HTTP {stat}).') from ex
            raise status.NetworkException(f'Error fetching user info: {ex}') from ex
        except google.auth.exceptions.RefreshError as ex:
            raise status.AuthenticationException(f'Failed to refresh session: {ex}') from ex
        except socket.timeout as ex:
            raise status.NetworkException(f'Timeout error fetching user info: {ex}') from ex
        except ssl.SSLError as ex:
            raise status.NetworkException(f'SSL error fetching user info: {ex}') from ex

        if not info or not info.get('id'):
            raise status.AuthenticationException('The userinfo response did not include an account id.')

        self._user = RemoteUser(id=str(info['id']), email=info.get('email', ''))
        logging.debug(f'Signed in as {self._user.email or self._user.id}')
        return self._user

    def sign_in(self, timeout: int = SIGN_IN_TIMEOUT) -> Optional[RemoteUser]:
        """Run the interactive OAuth flow and store the credentials.

        Must be called from the main thread. The browser flow runs in an
        :class:`AuthFlowWorker` while a local event loop waits at most timeout seconds.

        Returns:
            The signed-in user.

        Raises:
            status.ClientSecretNotFoundException: If client_secret.json is missing.
            status.ClientSecretInvalidException: If client_secret.json is invalid.
            status.AuthenticationException: If the flow fails, is cancelled, or times out.
        """
        client_config = self.settings.load_client_secret()

        logging.debug('Starting new OAuth flow...')
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=DEFAULT_SCOPES)

        auth_worker = AuthFlowWorker(flow)
        result = {'creds': None, 'error': None}
        loop = QtCore.QEventLoop()

        auth_worker.resultReady.connect(lambda c: (result.update({'creds': c}), loop.quit()))
        auth_worker.errorOccurred.connect(lambda err: (result.update({'error': err}), loop.quit()))

        timer = QtCore.QTimer()
        timer.setSingleShot(True)
        timer.timeout.connect(loop.quit)

        auth_worker.start()
        timer.start(timeout * 1000)
        loop.exec()
        timer.stop()

        if auth_worker.isRunning():
            auth_worker.terminate()
            auth_worker.wait()
            raise status.AuthenticationException('OAuth flow timed out (no response from browser).')

        if result['error']:
            raise status.AuthenticationException(f'OAuth flow failed: {result["error"]}')
        if not result['creds']:
            raise status.AuthenticationException('Authentication was cancelled or timed out.')

        from . import service
        with self._lock:
            self._creds = result['creds']
            self._user = None
            save_creds(self._creds, self.settings.creds_path)
        service.clear_service()

        user = service.start_asynchronous(self.get_current_user)
        self.authStateChanged.emit(SIGNED_IN, user)
        return user

    def sign_out(self) -> None:
        """
        Delete stored credentials to sign out the user.
        """
        from . import service

        with self._lock:
            self._creds = None
            self._user = None
            if self.settings.creds_path.exists():
                logging.debug(f'Deleting {self.settings.creds_path}...')
                self.settings.creds_path.unlink()
            else:
                logging.debug('No credentials file found. No action taken.')
        service.clear_service()

        logging.info('Signed out.')
        self.authStateChanged.emit(SIGNED_OUT, None)
