"""
Request middleware: request ids, access logging with hashed identities.
"""
import time
import uuid
import hashlib
import logging
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id and logs who asked for what, and how long it took"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        user_id = request.headers.get("X-User-ID")
        cart_id = request.headers.get("X-Cart-ID")
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "hashed_user_id": hash_identifier(user_id) if user_id else None,
            "hashed_cart_id": hash_identifier(cart_id) if cart_id else None,
            "is_administrator": request.headers.get("X-User-Role") == "admin",
            "has_idempotency_key": "Idempotency-Key" in request.headers,
        }

        logger.info("[request=%s] %s %s", request_id, request.method, request.url.path, extra=context)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "[request=%s] failed: %s", request_id, type(e).__name__,
                extra=dict(context, error=str(e)),
                exc_info=True
            )
            raise

        latency_ms = (time.time() - start_time) * 1000
        logger.info(
            "[request=%s] %d in %.2fms", request_id, response.status_code, latency_ms,
            extra=dict(context, status_code=response.status_code, latency_ms=round(latency_ms, 2))
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
        return response
