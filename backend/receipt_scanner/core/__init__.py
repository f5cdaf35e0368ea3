"""Core infrastructure: configuration, database, security, tasks and events.

Exports configuration settings to simplify import paths inside tests
(e.g. `from receipt_scanner.core import settings`).
"""

from .config import settings  # noqa: F401
