# followup_engine/web/security.py
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from followup_engine.config import get_settings

log = logging.getLogger("followups.security")


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """HMAC-SHA256 of the raw body, hex encoded; 'sha256=' prefixes are accepted."""
    if not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign_body(secret, body), signature)


def _secret(request: Request) -> str:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    return settings.WEBHOOK_SECRET


async def require_signature(request: Request, x_signature: Optional[str] = Header(None)) -> bytes:
    """Dependency: verifies X-Signature and hands back the raw body."""
    body = await request.body()
    if not verify_hmac_signature(_secret(request), body, x_signature):
        log.warning("Rejected webhook with invalid signature on %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid signature")
    return body


async def require_admin(request: Request, x_admin_token: Optional[str] = Header(None)) -> None:
    settings = getattr(request.app.state, "settings", None) or get_settings()
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(status_code=403, detail="Admin operations are disabled")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid admin token")
