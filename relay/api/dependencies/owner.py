"""
Owner (tenant) resolution.

Authentication lives in front of this service; the upstream layer forwards
the authenticated owner in ``X-Owner-ID``. The idempotency middleware scopes
keys by the same header, through the same normalisation.
"""
from fastapi import Header

OWNER_ID_HEADER = "X-Owner-ID"
ANONYMOUS_OWNER = "anonymous"


def normalize_owner_id(raw: str | None) -> str:
    """Surrounding whitespace is dropped; missing or blank means anonymous"""
    return (raw or "").strip() or ANONYMOUS_OWNER


async def get_owner_id(
    x_owner_id: str | None = Header(default=None, alias=OWNER_ID_HEADER),
) -> str:
    return normalize_owner_id(x_owner_id)
