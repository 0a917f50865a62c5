"""Request-scoped dependencies."""
from typing import Optional

from fastapi import Depends, Header, HTTPException

from omnisync.config import Settings, get_settings


def get_user_id(
    x_user_id: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    """Caller identity from the X-User-Id header (set by the auth proxy)."""
    user_id = x_user_id or settings.default_user_id
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
