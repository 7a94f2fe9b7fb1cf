import json
from unittest.mock import MagicMock, patch

import google.oauth2.credentials as cred_mod

from FirstMillion.core import auth
from FirstMillion.core import service
from FirstMillion.status.status import (
    AuthenticationException,
    ClientSecretNotFoundException,
    CredsInvalidException,
    NetworkException,
)
from tests.base import BaseTestCase, http_error


class DummyCreds:
    def __init__(self, expired=False, refresh_token='rt', fail=False):
        self.expired = expired
        self.refresh_token = refresh_token
        self.fail = fail

    def refresh(self, request):
        if self.fail:
            raise Exception('refresh failed')
        self.expired = False


def userinfo_client(info=None, error=None):
    client = MagicMock()
    execute = client.userinfo.return_value.get.return_value.execute
    if error is not None:
        execute.side_effect = error
    else:
        execute.return_value = info
    return client


class TestAuthManager(BaseTestCase):
    """Unit tests for the AuthManager behavior."""

    def setUp(self) -> None:
        super().setUp()
        self.manager = auth.AuthManager(self.settings)

    def write_creds(self):
        self.settings.creds_path.write_text(json.dumps({'token': 't'}), encoding='utf-8')

    def test_missing_credentials_raises_AuthExpiredError(self):
        self.assertFalse(self.manager.has_credentials())
        with self.assertRaises(auth.AuthExpiredError):
            self.manager.get_valid_credentials()

    def test_invalid_credentials_file_is_removed(self):
        self.settings.creds_path.write_text('not a json', encoding='utf-8')
        with self.assertRaises(CredsInvalidException):
            self.manager.get_valid_credentials()
        self.assertFalse(self.settings.creds_path.exists())

    def test_auto_refresh_succeeds(self):
        dummy = DummyCreds(expired=True)
        saved = []

        with patch.object(
                cred_mod.Credentials,
                'from_authorized_user_file',
                new=classmethod(lambda cls, f: dummy)
        ), patch.object(auth, 'save_creds', new=lambda creds, path: saved.append(path)):
            self.write_creds()
            result = self.manager.get_valid_credentials()

        self.assertIs(result, dummy)
        self.assertFalse(dummy.expired)
        self.assertEqual(saved, [self.settings.creds_path])

    def test_no_refresh_token_raises_AuthExpiredError(self):
        dummy = DummyCreds(expired=True, refresh_token=None)
        with patch.object(
                cred_mod.Credentials,
                'from_authorized_user_file',
                new=classmethod(lambda cls, f: dummy)
        ):
            self.write_creds()
            with self.assertRaises(auth.AuthExpiredError):
                self.manager.get_valid_credentials()

    def test_refresh_failure_raises_AuthenticationException(self):
        dummy = DummyCreds(expired=True, fail=True)
        with patch.object(
                cred_mod.Credentials,
                'from_authorized_user_file',
                new=classmethod(lambda cls, f: dummy)
        ):
            self.write_creds()
            with self.assertRaises(AuthenticationException):
                self.manager.get_valid_credentials()

    def test_current_user_without_credentials(self):
        self.assertIsNone(self.manager.get_current_user())

    def test_current_user_is_fetched_once(self):
        self.manager._creds = DummyCreds()
        client = userinfo_client({'id': '1234', 'email': 'someone@example.com'})

        with patch.object(service, 'get_service', return_value=client) as get_service:
            user = self.manager.get_current_user()
            again = self.manager.get_current_user()

        self.assertEqual(user, auth.RemoteUser(id='1234', email='someone@example.com'))
        self.assertIs(again, user)
        get_service.assert_called_once_with(self.manager, 'oauth2', 'v2')

    def test_current_user_rejected_session(self):
        self.manager._creds = DummyCreds()
        client = userinfo_client(error=http_error(401))
        with patch.object(service, 'get_service', return_value=client):
            with self.assertRaises(AuthenticationException):
                self.manager.get_current_user()

    def test_current_user_server_error(self):
        self.manager._creds = DummyCreds()
        client = userinfo_client(error=http_error(503))
        with patch.object(service, 'get_service', return_value=client):
            with self.assertRaises(NetworkException):
                self.manager.get_current_user()

    def test_current_user_without_id(self):
        self.manager._creds = DummyCreds()
        with patch.object(service, 'get_service', return_value=userinfo_client({'email': 'x@y.z'})):
            with self.assertRaises(AuthenticationException):
                self.manager.get_current_user()

    def test_sign_in_requires_client_secret(self):
        with self.assertRaises(ClientSecretNotFoundException):
            self.manager.sign_in(timeout=1)

    def test_sign_out_deletes_credentials(self):
        events = []

        def on_change(event, user):
            events.append((event, user))

        self.manager.authStateChanged.connect(on_change)
        self.manager._creds = DummyCreds()
        self.write_creds()
        service._cached_services[('sheets', 'v4')] = MagicMock()

        self.manager.sign_out()

        self.assertFalse(self.settings.creds_path.exists())
        self.assertIsNone(self.manager._creds)
        self.assertEqual(service._cached_services, {})
        self.assertEqual(events, [(auth.SIGNED_OUT, None)])
