"""
Status codes and exception hierarchy.

- :mod:`FirstMillion.status.status` – Status enum, user-facing messages and the exceptions raised across the core.
"""
