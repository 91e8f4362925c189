import hmac
import hashlib
import logging
from typing import Optional

from fastapi import Security, HTTPException, Request, Header
from fastapi.security import APIKeyHeader

from bulk_orchestrator.api.deps import AppSettings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

def sign_body(secret: str, body: bytes) -> str:
    """HMAC-SHA256 of the raw request body, hex encoded. Workers sign, we verify."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

async def get_current_owner(x_owner_id: Optional[str] = Header(None, alias="X-Owner-ID")) -> str:
    """
    The caller's identity. Authentication happens upstream (gateway/session
    layer); it forwards the authenticated owner id in X-Owner-ID.
    """
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-ID")
    return x_owner_id.strip()

async def require_operator(
    settings: AppSettings,
    api_key: str = Security(API_KEY_HEADER)
) -> None:
    if not settings.OPERATOR_API_KEY:
        raise HTTPException(status_code=403, detail="Operator API disabled")
    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")
    if not hmac.compare_digest(api_key, settings.OPERATOR_API_KEY):
        raise HTTPException(status_code=403, detail="Invalid API Key")

class SignatureVerifier:
    """
    Verifies X-Worker-Signature on worker callbacks. With no
    WORKER_SHARED_SECRET configured, signatures are not checked (local dev).
    """

    async def __call__(
        self,
        request: Request,
        settings: AppSettings,
        x_signature: Optional[str] = Header(None, alias="X-Worker-Signature"),
    ) -> Optional[str]:
        worker_id = request.headers.get("X-Worker-ID")
        if not settings.WORKER_SHARED_SECRET:
            return worker_id

        if not x_signature:
            raise HTTPException(status_code=401, detail="Missing Signature")

        body = await request.body()
        computed = sign_body(settings.WORKER_SHARED_SECRET, body)
        if not hmac.compare_digest(computed, x_signature):
            logger.warning(f"Invalid worker signature on {request.url.path} (worker={worker_id})")
            raise HTTPException(status_code=401, detail="Invalid Signature")

        return worker_id

verify_worker_signature = SignatureVerifier()
