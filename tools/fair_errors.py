"""
FAIRPLAY — Error Taxonomy

Every rejected bet carries one human-readable reason. The HTTP layer maps
http_status straight onto the response; the Ledger decides what to retry
by type (only TransientStorageError is retried).

A failed verification is not an error: verify_outcome() returns False.
"""


class FairPlayError(Exception):
    """Base for all engine errors."""
    http_status = 500

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidArgument(FairPlayError, ValueError):
    """Bad bet amount, target, seed or bet spec. User-correctable, never retried."""
    http_status = 400


class NotFound(FairPlayError, LookupError):
    """Wallet, session, transaction or seed missing."""
    http_status = 404


class Forbidden(FairPlayError, PermissionError):
    """Caller is signed in but may not act on this resource."""
    http_status = 403


class InsufficientFunds(FairPlayError):
    """Business-rule rejection, surfaced verbatim."""
    http_status = 402


class SettlementFailure(FairPlayError):
    """Storage or transactional failure mid-settlement. Nothing was committed."""
    http_status = 503


class TransientStorageError(SettlementFailure):
    """Lock contention / serialization conflict, safe to retry the whole attempt."""
