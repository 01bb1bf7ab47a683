from __future__ import annotations

from fastapi import Header, HTTPException, status


async def get_current_principal(
    principal_id: str | None = Header(default=None, alias="X-Principal-Id"),
) -> str:
    """Return the principal id asserted by the upstream identity gateway.

    Ownership stamping only; no authorization decisions are made here.
    """
    principal = (principal_id or "").strip()
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return principal
