"""
Instrumentação de handlers no estilo edge-event

O handler recebe um evento com `request` e registra a response com
`event.respond_with(awaitable)`. A instrumentação troca a request por uma
cópia com body espelhado e embrulha `respond_with` para observar a resposta
antes de entregá-la ao host.
"""
import functools
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import structlog
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from .capture import ReceiveTee, buffer_response, client_ip, request_from_scope, response_from_parts
from .engine import Treblle
from .models import CapturedRequest, CapturedResponse

logger = structlog.get_logger(__name__)

ADAPTER = "edge"

ResponseSource = Union[Response, Awaitable[Response]]
EventHandler = Callable[["FetchEvent"], Any]


class FetchEvent:
    """Evento de request entregue ao handler"""

    def __init__(self, request: Request):
        self.request = request
        self._response: Optional[ResponseSource] = None

    def respond_with(self, response: ResponseSource) -> None:
        if self._response is not None:
            raise RuntimeError("respond_with já foi chamado para este evento")
        self._response = response

    @property
    def responded(self) -> bool:
        return self._response is not None

    async def response(self) -> Response:
        """Aguarda a response registrada pelo handler"""
        if self._response is None:
            raise RuntimeError("O handler não registrou uma response")
        response = self._response
        if inspect.isawaitable(response):
            response = await response
        return response


def event_app(handler: EventHandler) -> ASGIApp:
    """Expõe um handler de eventos como aplicação ASGI"""

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            return

        event = FetchEvent(Request(scope, receive))
        result = handler(event)
        if inspect.isawaitable(result):
            await result

        response = await event.response()
        await response(scope, receive, send)

    return app


class _EdgeExchange:
    """Estado de captura de um evento"""

    def __init__(self, engine: Treblle, request: Request):
        self.engine = engine
        self.scope = request.scope
        self.receive = ReceiveTee(request.receive)
        self.ip = request.headers.get("x-real-ip") or client_ip(request.scope)
        self.started_at = datetime.now(timezone.utc)
        self.start_ns = time.perf_counter_ns()
        self.reported = False

    def elapsed(self) -> int:
        return time.perf_counter_ns() - self.start_ns

    def captured_request(self, body: bytes) -> CapturedRequest:
        return request_from_scope(self.scope, body, self.started_at, ip=self.ip)

    async def report(self, response: Optional[CapturedResponse], error: Optional[BaseException] = None):
        if self.reported:
            return
        self.reported = True

        elapsed = self.elapsed()
        try:
            body = await self.receive.drain()
        except Exception as e:
            self.engine.instrumentation_failed(ADAPTER, "drain", e)
            body = self.receive.body

        await self.engine.report(self.captured_request(body), response, elapsed, error=error, adapter=ADAPTER)
        self.receive.clear()

    def report_in_background(self, error: BaseException):
        if self.reported:
            return
        self.reported = True

        self.engine.report_in_background(
            self.captured_request(self.receive.body),
            None,
            self.elapsed(),
            error=error,
            adapter=ADAPTER,
        )

    async def observe(self, response: ResponseSource) -> Response:
        """Awaitable entregue ao host: a response real (ou o erro real) depois do envio"""
        try:
            result = await response if inspect.isawaitable(response) else response
            body = await buffer_response(result)
        except Exception as exc:
            await self.report(None, error=exc)
            raise

        await self.report(response_from_parts(result.status_code, result.headers, body))
        return result

    async def guard(self, pending: Awaitable[Any]) -> Any:
        try:
            return await pending
        except Exception as exc:
            await self.report(None, error=exc)
            raise


def instrument_event_handler(
    handler: Optional[EventHandler] = None,
    *,
    treblle: Optional[Treblle] = None,
    **options,
) -> Any:
    """
    Decorator para handlers de eventos.

    Exceções do handler (síncronas ou da response registrada) são
    reportadas e levantadas de novo sem alteração.
    """
    engine = Treblle.resolve(treblle, **options)

    def decorator(func: EventHandler) -> EventHandler:

        @functools.wraps(func)
        def wrapper(event: Any) -> Any:
            if not engine.should_capture(event.request.url.path):
                return func(event)

            try:
                exchange = _EdgeExchange(engine, event.request)
                event.request = Request(event.request.scope, receive=exchange.receive)
                respond_with = event.respond_with
            except Exception as e:
                engine.instrumentation_failed(ADAPTER, "clone", e)
                return func(event)

            def observed_respond_with(response: ResponseSource) -> None:
                respond_with(exchange.observe(response))

            event.respond_with = observed_respond_with

            try:
                result = func(event)
            except Exception as exc:
                exchange.report_in_background(exc)
                raise

            if inspect.isawaitable(result):
                return exchange.guard(result)
            return result

        wrapper.treblle = engine
        return wrapper

    if handler is not None:
        return decorator(handler)
    return decorator
