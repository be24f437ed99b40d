import hashlib
import hmac
import logging

from fastapi import HTTPException, Request, status

from app.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"


def compute_signature(payload: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(payload, secret), signature)


async def verify_webhook_request(request: Request) -> bytes:
    """FastAPI dependency: returns the raw body once the signature checks out."""
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET is not set; accepting unsigned webhook deliveries")
    if not verify_signature(body, signature, settings.webhook_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"message": "Invalid webhook signature", "code": "invalid_signature"},
        )
    return body
