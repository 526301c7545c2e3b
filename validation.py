from ledger_errors import InvalidUser


def require_user(fid) -> int:
    """Return ``fid`` as an int, or raise InvalidUser before any store access."""
    if isinstance(fid, bool) or not isinstance(fid, int):
        raise InvalidUser(f"user id must be an integer, got {fid!r}")
    if fid <= 0:
        raise InvalidUser(f"user id must be positive, got {fid}")
    return fid
