"""
Logging subsystem.

Modules:

- :mod:`FirstMillion.log.log` – Root logger setup, in-memory TankHandler and the Qt message bridge.
"""
