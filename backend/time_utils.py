"""Clock helpers shared by models and token issuance."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware current time in UTC, used for every stored timestamp and token expiry."""
    return datetime.now(timezone.utc)
