"""Settings library for application and authentication configuration.

Provides:
    - Schema validation and enforcement for the config.json structure.
    - Loading, saving, reverting, and managing application settings.
    - Loading and validating the Google client_secret.json.
    - Application paths (config, auth, and local storage directories).
"""

import copy
import json
import logging
import pathlib
from typing import Dict, Any, Optional, List

from PySide6 import QtCore

from ..status import status

app_name: str = 'FirstMillion'

PUSH_POLICIES: List[str] = ['pending', 'all']

SYNC_KEYS: List[str] = [
    'interval_minutes',
    'auth_timeout_seconds',
    'network_timeout_seconds',
    'push_policy',
]

SETTINGS_SCHEMA: Dict[str, Any] = {
    'remote': {
        'type': dict,
        'required': True,
        'item_schema': {
            'spreadsheet_id': {'type': str, 'required': True},
        }
    },
    'sync': {
        'type': dict,
        'required': True,
        'required_keys': SYNC_KEYS,
        'item_schema': {
            'interval_minutes': {'type': int, 'required': True, 'min': 1},
            'auth_timeout_seconds': {'type': int, 'required': True, 'min': 1},
            'network_timeout_seconds': {'type': int, 'required': True, 'min': 1},
            'push_policy': {'type': str, 'required': True, 'allowed_values': PUSH_POLICIES},
        }
    },
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    'remote': {
        'spreadsheet_id': '',
    },
    'sync': {
        'interval_minutes': 10,
        'auth_timeout_seconds': 3,
        'network_timeout_seconds': 60,
        'push_policy': 'pending',
    },
}


def _validate_section(name: str, section: Dict[str, Any], specs: Dict[str, Any]) -> None:
    """Validate a single config section against its schema entry.

    Args:
        name: Section name, used in error messages.
        section: The section data.
        specs: The schema entry for the section.

    Raises:
        status.SettingsInvalidException: If a key is missing, has the wrong type, or an invalid value.
    """
    logging.debug(f'Validating "{name}" section.')
    if not isinstance(section, specs['type']):
        raise status.SettingsInvalidException(
            f'Section "{name}" must be {specs["type"]}, got {type(section)}.'
        )

    for key, key_specs in specs.get('item_schema', {}).items():
        if key not in section:
            if key_specs.get('required'):
                raise status.SettingsInvalidException(f'Section "{name}" is missing "{key}".')
            continue

        value = section[key]
        # bool is an int subclass; never accept it for numeric settings
        if isinstance(value, bool) or not isinstance(value, key_specs['type']):
            raise status.SettingsInvalidException(
                f'"{name}.{key}" must be {key_specs["type"]}, got {type(value)}.'
            )
        if 'min' in key_specs and value < key_specs['min']:
            raise status.SettingsInvalidException(
                f'"{name}.{key}" must be at least {key_specs["min"]}, got {value}.'
            )
        if 'allowed_values' in key_specs and value not in key_specs['allowed_values']:
            raise status.SettingsInvalidException(
                f'"{name}.{key}" must be one of {key_specs["allowed_values"]}, got "{value}".'
            )


class ConfigPaths:
    """Manage application file paths and ensure the required directories exist.

    Args:
        app_data_dir: Root directory for all application data. Defaults to
            the platform's AppDataLocation.
    """

    def __init__(self, app_data_dir: Optional[str] = None) -> None:
        QtCore.QCoreApplication.setApplicationName(app_name)
        QtCore.QCoreApplication.setOrganizationName('')

        if app_data_dir is None:
            p = QtCore.QStandardPaths.writableLocation(QtCore.QStandardPaths.AppDataLocation)
            app_data_dir = p
        self.app_data_dir: pathlib.Path = pathlib.Path(app_data_dir)
        logging.debug(f'Using app data directory: {self.app_data_dir}')

        self.config_dir: pathlib.Path = self.app_data_dir / 'config'
        self.auth_dir: pathlib.Path = self.config_dir / 'auth'
        self.db_dir: pathlib.Path = self.config_dir / 'db'

        # Config files
        self.config_path: pathlib.Path = self.config_dir / 'config.json'
        self.client_secret_path: pathlib.Path = self.config_dir / 'client_secret.json'
        self.creds_path: pathlib.Path = self.auth_dir / 'creds.json'
        self.db_path: pathlib.Path = self.db_dir / 'storage.db'

        self._verify_and_prepare()

    def _verify_and_prepare(self) -> None:
        """Create missing config, auth and db directories and write the default config."""
        for path in (self.config_dir, self.auth_dir, self.db_dir):
            if not path.exists():
                logging.debug(f'Creating directory: {path}')
                path.mkdir(parents=True, exist_ok=True)

        if not self.config_path.exists():
            logging.debug(f'Writing default config to {self.config_path}')
            with self.config_path.open('w', encoding='utf-8') as f:
                json.dump(DEFAULT_SETTINGS, f, indent=4, ensure_ascii=False)

    def revert_config_to_default(self) -> None:
        """Restore config.json from the built-in defaults."""
        logging.debug(f'Reverting config to defaults: {self.config_path}')
        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(DEFAULT_SETTINGS, f, indent=4, ensure_ascii=False)


class SettingsAPI(ConfigPaths):
    """
    Provides an interface to get/set/revert/save config.json sections and to read client_secret.json.
    """
    required_client_secret_keys: List[str] = ['client_id', 'project_id', 'client_secret', 'auth_uri', 'token_uri']

    def __init__(self, app_data_dir: Optional[str] = None) -> None:
        super().__init__(app_data_dir=app_data_dir)

        self.config_data: Dict[str, Any] = {}
        for k in SETTINGS_SCHEMA.keys():
            self.config_data[k] = {}

        self.client_secret_data: Dict[str, Any] = {}

        self.init_data()

    def __getitem__(self, key: str) -> Any:
        """Retrieve a sync setting using dictionary-style access.

        Args:
            key: One of SYNC_KEYS.

        Raises:
            KeyError: If key is not a sync setting.
        """
        if key not in SYNC_KEYS:
            raise KeyError(f'Invalid sync key: {key}, must be one of {SYNC_KEYS}')
        return self.config_data['sync'].get(key, DEFAULT_SETTINGS['sync'][key])

    def init_data(self) -> None:
        """Load config and client_secret data from disk."""
        self.load_config()
        if self.client_secret_path.exists():
            try:
                self.load_client_secret()
            except status.ClientSecretInvalidException:
                # Sign-in reports this again when it actually needs the secret
                self.client_secret_data = {}

    def load_config(self) -> Dict[str, Any]:
        """Load config.json from disk and validate against schema.

        Returns:
            The loaded config data dictionary.

        Raises:
            status.SettingsNotFoundException: If config.json file is missing.
            status.SettingsInvalidException: If JSON parsing or validation fails.
        """
        logging.debug(f'Loading config from "{self.config_path}"')
        if not self.config_path.exists():
            raise status.SettingsNotFoundException

        try:
            with self.config_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (ValueError, json.JSONDecodeError) as ex:
            raise status.SettingsInvalidException(f'Failed to parse {self.config_path}: {ex}') from ex

        self.validate_config_data(data)
        self.config_data = data
        return self.config_data

    def validate_config_data(self, data: Dict[str, Any] = None) -> None:
        """Validate config data against SETTINGS_SCHEMA.

        Args:
            data (dict, optional): Config data to validate. Defaults to self.config_data.

        Raises:
            status.SettingsInvalidException: If a required section is missing or validation fails.
        """
        if data is None:
            data = self.config_data

        for field, specs in SETTINGS_SCHEMA.items():
            if specs.get('required') and field not in data:
                raise status.SettingsInvalidException(f'Missing required section: {field}')
            if field in data:
                _validate_section(field, data[field], specs)

        logging.debug('Config data is valid.')

    def load_client_secret(self) -> Dict[str, Any]:
        """Load client_secret.json from disk and validate required OAuth fields.

        Returns:
            The loaded client secret data dictionary.

        Raises:
            status.ClientSecretNotFoundException: If client_secret.json file is missing.
            status.ClientSecretInvalidException: If JSON parsing or required fields are missing.
        """
        logging.debug(f'Loading client_secret from "{self.client_secret_path}"')
        if not self.client_secret_path.exists():
            raise status.ClientSecretNotFoundException
        try:
            with self.client_secret_path.open('r', encoding='utf-8') as f:
                data: Dict[str, Any] = json.load(f)
        except (ValueError, json.JSONDecodeError) as ex:
            raise status.ClientSecretInvalidException from ex

        self.validate_client_secret(data)
        self.client_secret_data = data
        return self.client_secret_data

    def validate_client_secret(self, data=None) -> str:
        """Validate that the client configuration contains required OAuth credentials.

        Args:
            data (dict, optional): Client secret data to validate. Defaults to loaded client_secret_data.

        Returns:
            str: Section key used ('installed' or 'web').

        Raises:
            status.ClientSecretInvalidException: If no valid client_secret section exists or required fields are missing.
        """
        if data is None:
            data = self.client_secret_data

        key = next((k for k in ('installed', 'web') if k in data), None)
        if not key:
            raise status.ClientSecretInvalidException('Missing "installed" or "web" section in client_secret.')

        config_section: Dict[str, Any] = data[key]
        missing: List[str] = [k for k in self.required_client_secret_keys if k not in config_section]
        if missing:
            raise status.ClientSecretInvalidException(
                f'Missing required fields in the \'{key}\' section: {missing}.'
            )
        return key

    def get_section(self, section_name: str) -> Dict[str, Any]:
        """Retrieve a copy of configuration data for a config or client_secret section.

        Args:
            section_name: Section name ('client_secret' or key from the settings schema).

        Returns:
            A copied dict of the requested section data.

        Raises:
            KeyError: If section_name is not in config_data.
        """
        if section_name == 'client_secret':
            return copy.deepcopy(self.client_secret_data)

        return self.config_data[section_name].copy()

    def set_section(self, section_name: str, new_data: Dict[str, Any]) -> None:
        """Replace and persist a configuration section.

        Args:
            section_name: Section to update ('client_secret' or config key).
            new_data: New data dict for the section.

        Raises:
            ValueError: If section_name is unrecognized.
            status.SettingsInvalidException: If the new data fails validation. The previous
                section data is restored.
        """
        from ..core.signals import signals

        if section_name == 'client_secret':
            logging.debug('Setting entire client_secret data.')
            self.validate_client_secret(new_data)
            self.client_secret_data = new_data
            self.save_section('client_secret')

            signals.configSectionChanged.emit(section_name)
            return

        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for set: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        current_section_data: Dict[str, Any] = self.config_data[section_name].copy()

        self.config_data[section_name] = new_data
        try:
            self.validate_config_data()
        except status.SettingsInvalidException:
            logging.error(f'Validation error on set_section("{section_name}"), rolling back.')
            self.config_data[section_name] = current_section_data
            raise

        self.save_section(section_name)
        signals.configSectionChanged.emit(section_name)

    def revert_section(self, section_name: str) -> None:
        """Revert a configuration section to its default and save.

        Args:
            section_name: Section to revert.

        Raises:
            ValueError: If section_name is invalid.
        """
        from ..core.signals import signals

        if section_name not in DEFAULT_SETTINGS:
            msg: str = f'Unknown section_name for revert: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        self.config_data[section_name] = copy.deepcopy(DEFAULT_SETTINGS[section_name])
        self.save_section(section_name)

        signals.configSectionChanged.emit(section_name)

    def save_section(self, section_name: str) -> None:
        """Persist a single configuration section to its corresponding file.

        Args:
            section_name: The section to save ('client_secret' or config key).

        Raises:
            ValueError: If section_name is not recognized.
        """
        if section_name == 'client_secret':
            logging.debug(f'Saving client_secret to "{self.client_secret_path}"')
            self.validate_client_secret(self.client_secret_data)
            with self.client_secret_path.open('w', encoding='utf-8') as f:
                json.dump(self.client_secret_data, f, indent=4, ensure_ascii=False)
            return

        if section_name not in self.config_data:
            msg: str = f'Unknown section_name for save: "{section_name}"'
            logging.error(msg)
            raise ValueError(msg)

        with self.config_path.open('r', encoding='utf-8') as f:
            original_data: Dict[str, Any] = json.load(f)

        new_data: Dict[str, Any] = original_data.copy()
        new_data[section_name] = self.config_data[section_name]

        with self.config_path.open('w', encoding='utf-8') as f:
            json.dump(new_data, f, indent=4, ensure_ascii=False)
