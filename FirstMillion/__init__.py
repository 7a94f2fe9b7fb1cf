"""
FirstMillion: local-first personal finance records with Google Sheets sync.

This package provides:

- :mod:`FirstMillion.core` – The record store, derived balances, change notification, and the sync engine and scheduler.
- :mod:`FirstMillion.data` – pandas read views over the stored records.
- :mod:`FirstMillion.settings` – Settings management, application paths and schema validation.
- :mod:`FirstMillion.status` – Status codes and the exceptions raised across the package.
- :mod:`FirstMillion.log` – In-app logging with an in-memory log tank.

Use :func:`FirstMillion.initialize` to create the application's :class:`~FirstMillion.core.ledger.LedgerAPI`.
"""

import sys

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('FirstMillion requires Python 3.11 or higher.')

__version__ = '0.1.0'
__description__ = 'FirstMillion: local-first personal finance records with Google Sheets sync.'

from .log import log

log.setup_logging()


def initialize(app_data_dir=None, **kwargs):
    """Create the application's ledger and start the auth check.

    A Qt application instance must exist and run its event loop for the
    scheduler's timers and background auth check.

    Args:
        app_data_dir (str, optional): Root directory for settings and storage.
        **kwargs: Passed to :class:`~FirstMillion.core.ledger.LedgerAPI`.

    Returns:
        LedgerAPI: The initialized ledger.
    """
    from .core import ledger
    api = ledger.initialize(app_data_dir=app_data_dir, **kwargs)
    api.start()
    return api
