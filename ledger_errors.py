"""
Error types raised by the interaction ledger.

Validation errors (InvalidUser, InvalidIdentity) are raised before the store
is touched. StoreUnavailable wraps any backend failure during a read or a
commit. PartialMigrationFailure never leaves the migrator.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""


class InvalidIdentity(LedgerError):
    """No MediaKey could be derived for the given NFT."""


class InvalidUser(LedgerError):
    """The user id is missing, not an integer, or not positive."""


class StoreUnavailable(LedgerError):
    """The backing store failed or could not be reached."""


class PartialMigrationFailure(LedgerError):
    """A single legacy like record could not be parsed."""

    def __init__(self, source: str, record_id: str, reason: str):
        super().__init__(f"{source} record {record_id!r}: {reason}")
        self.source = source
        self.record_id = record_id
        self.reason = reason
