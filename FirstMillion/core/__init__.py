"""
Core package for FirstMillion providing the record store and sync engine.

This package includes:

- :mod:`FirstMillion.core.records` – Record kinds, field schemas, validation and remote row conversion.
- :mod:`FirstMillion.core.database` – Local SQLite key-value storage.
- :mod:`FirstMillion.core.bus` – Per-kind change notification.
- :mod:`FirstMillion.core.store` – The record store: CRUD over the typed collections.
- :mod:`FirstMillion.core.derived` – Asset balances and goal progress derived from transactions.
- :mod:`FirstMillion.core.auth` – Google OAuth2 authentication and credential management.
- :mod:`FirstMillion.core.service` – Worker threads and cached Google API clients.
- :mod:`FirstMillion.core.remote` – The remote record service contract and its Google Sheets implementation.
- :mod:`FirstMillion.core.sync` – Push and pull between the record store and the remote service.
- :mod:`FirstMillion.core.scheduler` – Auth-driven and periodic sync cycles.
- :mod:`FirstMillion.core.ledger` – The application-facing API.
- :mod:`FirstMillion.core.signals` – Application-wide Qt signals.
"""
