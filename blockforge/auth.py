from __future__ import annotations

import hashlib
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, status

TOKEN_HEADER = "X-Build-Token"


def verify_token(provided: str, configured: str) -> bool:
    provided_digest = hashlib.sha256(provided.encode("utf-8")).hexdigest()
    configured_digest = hashlib.sha256(configured.encode("utf-8")).hexdigest()
    return secrets.compare_digest(provided_digest, configured_digest)


def require_token(request: Request, x_build_token: Optional[str] = Header(default=None)) -> None:
    """No-op when no token is configured."""
    configured = request.app.state.settings.api_token
    if not configured:
        return
    if not x_build_token or not verify_token(x_build_token, configured):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing build token")
