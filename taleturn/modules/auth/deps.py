from __future__ import annotations

from dataclasses import dataclass

from fastapi import Cookie, Header, HTTPException, status

from taleturn import error_codes


@dataclass(frozen=True, slots=True)
class OwnerIdentity:
    owner_id: str
    is_guest: bool


def resolve_owner(
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    guest_id: str | None = Cookie(default=None, alias="guestId"),
) -> OwnerIdentity:
    owner_id = str(x_owner_id or "").strip()
    if owner_id:
        return OwnerIdentity(owner_id=owner_id, is_guest=False)

    guest = str(guest_id or "").strip()
    if guest:
        return OwnerIdentity(owner_id=guest, is_guest=True)

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_codes.error_detail(error_codes.UNAUTHORIZED, "Missing X-Owner-Id header or guestId cookie"),
    )
