"""
ksef_client: client core for the KSeF national e-invoicing Exchange.

Challenge-based authentication, encrypted session-scoped document submission,
status polling, duplicate suppression and scheduled incremental
synchronization across tenant accounts.
"""

__version__ = "0.1.0"
