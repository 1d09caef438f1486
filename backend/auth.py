"""
Caller identity for the data bank API.

Authentication happens upstream; the gateway forwards the verified user id in
X-User-Id. Every query and mutation is scoped to that user's rows.
"""
from __future__ import annotations

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def require_user(user_id: Annotated[Optional[str], Depends(user_id_header)]) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return user_id.strip()
