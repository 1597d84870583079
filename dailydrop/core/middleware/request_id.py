import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from dailydrop.core.logging import latency_bucket_ms, request_id_ctx_var

logger = logging.getLogger("dailydrop.http")

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")
_HEALTH_PATHS = frozenset({"/healthz", "/readyz"})


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request_id for the request and log its completion.

    A caller-supplied id is reused when it looks sane; otherwise a fresh uuid
    is issued. Health checks are logged at DEBUG so they don't flood the logs.
    """

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        incoming = request.headers.get(self.header_name, "")
        rid = incoming if _VALID_REQUEST_ID.match(incoming) else str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        latency = latency_bucket_ms((time.perf_counter() - start) * 1000)

        response.headers[self.header_name] = rid
        logger.log(
            logging.DEBUG if request.url.path in _HEALTH_PATHS else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_bucket": latency,
            },
        )
        return response
