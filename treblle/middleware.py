"""
Middleware cooperativo de instrumentação (BaseHTTPMiddleware)
O body da request é lido antes de `call_next` e o da response é bufferizado na volta
"""
import time
from datetime import datetime, timezone
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from .capture import buffer_response, request_from_scope, response_from_parts
from .engine import Treblle

logger = structlog.get_logger(__name__)

ADAPTER = "middleware"


class TreblleMiddleware(BaseHTTPMiddleware):
    """Middleware para capturar o ciclo request/response de cada chamada"""

    def __init__(self, app: ASGIApp, treblle: Optional[Treblle] = None, **options):
        super().__init__(app)
        self.treblle = Treblle.resolve(treblle, **options)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self.treblle.should_capture(request.url.path):
            return await call_next(request)

        started_at = datetime.now(timezone.utc)
        start = time.perf_counter_ns()

        try:
            body = await request.body()
            captured_request = request_from_scope(request.scope, body, started_at)
        except Exception as e:
            self.treblle.instrumentation_failed(ADAPTER, "capture", e)
            return await call_next(request)

        try:
            response = await call_next(request)
            response_body = await buffer_response(response)
        except Exception as exc:
            await self.treblle.report(
                captured_request,
                None,
                time.perf_counter_ns() - start,
                error=exc,
                adapter=ADAPTER,
            )
            raise

        elapsed = time.perf_counter_ns() - start
        captured_response = response_from_parts(response.status_code, response.headers, response_body)
        await self.treblle.report(captured_request, captured_response, elapsed, adapter=ADAPTER)
        return response
