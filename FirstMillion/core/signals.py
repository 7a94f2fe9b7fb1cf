"""Application-wide Qt signals for FirstMillion.

Components that need to notify presentation code without holding a reference to it
emit through the shared :data:`signals` object: configuration changes, errors raised
by :mod:`FirstMillion.status.status`, and log viewer requests.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for configuration, error and sync events."""
    configSectionChanged = QtCore.Signal(str)

    authStatusChanged = QtCore.Signal(str)
    syncStatusChanged = QtCore.Signal(object)

    preferenceChanged = QtCore.Signal(str, object)

    showLogs = QtCore.Signal()

    error = QtCore.Signal(str)


signals = Signals()
