"""
Per-request correlation id.

Binds x-request-id (or a fresh uuid) into the logging context for the
duration of the request, echoes it on the response, and writes one
`request.complete` record tagged with the caller's X-User-Id.
"""

import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from dealclub.core.logging import latency_bucket_ms, request_id_ctx_var

CALLER_HEADER = "x-user-id"


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers[self.header_name] = rid
        status = response.status_code
        logging.getLogger("dealclub").log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request.complete",
            extra={
                "request_id": rid,
                "subscriber_id": request.headers.get(CALLER_HEADER) or None,
                "path": request.url.path,
                "method": request.method,
                "status": status,
                "latency_bucket": latency_bucket_ms(elapsed_ms),
            },
        )
        return response
