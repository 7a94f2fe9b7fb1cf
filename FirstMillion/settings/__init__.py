"""
Settings package.

- :mod:`FirstMillion.settings.lib` – Application paths, config.json schema validation and the SettingsAPI.
"""
