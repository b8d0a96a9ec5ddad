"""
Adaptador ASGI puro (estilo buffered-callback)

Intercepta o callable `send`: cada mensagem vai primeiro para o servidor e
depois é registrada. A última mensagem de body (`more_body` falso) finaliza o
ciclo. Erros 5xx que sobem até o handler de erro do Starlette são reportados
uma única vez, pelo caminho de erro.
"""
import inspect
import time
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import structlog
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .capture import ReceiveTee, request_from_scope, response_from_parts
from .engine import Treblle
from .models import CapturedRequest, CapturedResponse

logger = structlog.get_logger(__name__)

ADAPTER = "asgi"

# Chave do scope ASGI com o estado de captura da request em andamento
EXCHANGE_SCOPE_KEY = "treblle.exchange"


class _Exchange:
    """Estado de captura de uma request: armed -> finalized -> done"""

    def __init__(self, scope: Scope, receive: Receive):
        self.scope = scope
        self.receive = ReceiveTee(receive)
        self.started_at = datetime.now(timezone.utc)
        self.start_ns = time.perf_counter_ns()
        self.elapsed_ns: Optional[int] = None

        self.status_code: Optional[int] = None
        self.raw_headers: List[Tuple[bytes, bytes]] = []
        self.chunks: List[bytes] = []

        self.response_started = False
        self.finalized = False
        self.reported = False

    def record(self, message: Message) -> bool:
        """Registra uma mensagem enviada; True quando o ciclo finaliza"""
        if message["type"] == "http.response.start":
            self.response_started = True
            self.status_code = message["status"]
            self.raw_headers = list(message.get("headers", []))
        elif message["type"] == "http.response.body":
            self.chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                self.finalized = True
                self.elapsed_ns = time.perf_counter_ns() - self.start_ns
                return True
        return False

    def captured_request(self) -> CapturedRequest:
        return request_from_scope(self.scope, self.receive.body, self.started_at)

    def captured_response(self) -> Optional[CapturedResponse]:
        if self.status_code is None:
            return None
        return response_from_parts(self.status_code, self.raw_headers, b"".join(self.chunks))

    def elapsed(self) -> int:
        if self.elapsed_ns is not None:
            return self.elapsed_ns
        return time.perf_counter_ns() - self.start_ns

    def release(self):
        self.chunks = []
        self.receive.clear()


class TreblleASGIMiddleware:
    """
    Middleware ASGI de instrumentação.

    Use `install(app, ...)` em aplicações Starlette/FastAPI para também
    reportar erros não tratados pelo handler de erro da aplicação. Montado
    diretamente, os erros são reportados aqui mesmo, antes de subirem.
    """

    def __init__(self, app: ASGIApp, treblle: Optional[Treblle] = None, defer_errors: bool = False, **options):
        self.app = app
        self.treblle = Treblle.resolve(treblle, **options)
        self.defer_errors = defer_errors

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.treblle.should_capture(scope.get("path", "/")):
            await self.app(scope, receive, send)
            return

        exchange = _Exchange(scope, receive)
        scope[EXCHANGE_SCOPE_KEY] = exchange
        handed_off = False

        async def send_wrapper(message: Message) -> None:
            await send(message)
            try:
                if exchange.record(message) and exchange.status_code < 500:
                    await self._report(exchange)
            except Exception as e:
                self.treblle.instrumentation_failed(ADAPTER, "finalize", e)

        try:
            await self.app(scope, exchange.receive, send_wrapper)
        except Exception as exc:
            if exchange.response_started or not self._defers_to_error_handler(scope):
                await self._report(exchange, error=exc)
            else:
                handed_off = True
            raise
        else:
            if exchange.response_started:
                await self._report(exchange)
        finally:
            if not handed_off:
                scope.pop(EXCHANGE_SCOPE_KEY, None)

    def _defers_to_error_handler(self, scope: Scope) -> bool:
        # Em debug o Starlette não chama o handler de erro
        if not self.defer_errors:
            return False
        return not getattr(scope.get("app"), "debug", False)

    async def _report(self, exchange: _Exchange, error: Optional[BaseException] = None) -> None:
        if exchange.reported:
            return
        exchange.reported = True

        try:
            await self.treblle.report(
                exchange.captured_request(),
                exchange.captured_response(),
                exchange.elapsed(),
                error=error,
                adapter=ADAPTER,
            )
        except Exception as e:
            self.treblle.instrumentation_failed(ADAPTER, "report", e)
        finally:
            exchange.release()


def _error_handler_of(app: Starlette) -> Any:
    """Handler que o Starlette entrega ao ServerErrorMiddleware (o último entre 500 e Exception)"""
    handler = None
    for key, value in app.exception_handlers.items():
        if key in (500, Exception):
            handler = value
    return handler


def install(app: Starlette, treblle: Optional[Treblle] = None, **options) -> Treblle:
    """
    Instala a instrumentação em uma aplicação Starlette/FastAPI.

    Adiciona o middleware e envolve o handler de erro da aplicação, que passa
    a reportar as requests que terminam em exceção não tratada. Deve ser
    chamado antes da aplicação iniciar.
    """
    engine = Treblle.resolve(treblle, **options)
    original_handler = _error_handler_of(app)

    async def report_unhandled_error(request: Request, exc: Exception) -> Response:
        exchange = request.scope.pop(EXCHANGE_SCOPE_KEY, None)
        response = None
        try:
            if original_handler is None:
                response = PlainTextResponse("Internal Server Error", status_code=500)
            elif inspect.iscoroutinefunction(original_handler):
                response = await original_handler(request, exc)
            else:
                response = await run_in_threadpool(original_handler, request, exc)
            return response
        finally:
            if exchange is not None and not exchange.reported:
                exchange.reported = True
                await engine.report(
                    exchange.captured_request(),
                    _handler_response(response),
                    exchange.elapsed(),
                    error=exc,
                    adapter=ADAPTER,
                )
                exchange.release()

    app.exception_handlers.pop(500, None)
    app.exception_handlers.pop(Exception, None)
    app.add_exception_handler(Exception, report_unhandled_error)
    app.add_middleware(TreblleASGIMiddleware, treblle=engine, defer_errors=True)

    logger.info("Instrumentação ASGI instalada", app=type(app).__name__)
    return engine


def _handler_response(response: Optional[Response]) -> Optional[CapturedResponse]:
    if response is None:
        return None
    body = getattr(response, "body", None)
    return response_from_parts(response.status_code, response.headers, body if isinstance(body, bytes) else None)

