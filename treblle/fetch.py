"""
Instrumentação de endpoints no estilo fetch (request -> awaitable de response)

    @instrument_endpoint(api_key=..., project_id=...)
    async def create_user(request: Request) -> Response:
        ...
"""
import functools
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import TypeAdapter
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from .capture import buffer_response, clone_request, request_from_scope, response_from_parts
from .engine import Treblle
from .models import CapturedResponse

logger = structlog.get_logger(__name__)

ADAPTER = "fetch"

Endpoint = Callable[..., Any]

# retornos de endpoints FastAPI (modelos pydantic, datas, UUIDs...) viram dados JSON
_JSON_VALUES = TypeAdapter(Any)


async def _call(endpoint: Endpoint, request: Request, *args, **kwargs) -> Any:
    if inspect.iscoroutinefunction(endpoint):
        return await endpoint(request, *args, **kwargs)
    return await run_in_threadpool(endpoint, request, *args, **kwargs)


async def _captured_result(result: Any) -> CapturedResponse:
    if isinstance(result, Response):
        body = await buffer_response(result)
        return response_from_parts(result.status_code, result.headers, body)

    # FastAPI serializa o retorno depois do endpoint
    try:
        body = _JSON_VALUES.dump_python(result, mode="json")
    except Exception as e:
        logger.warning("Retorno do endpoint não serializável, body ignorado", error=str(e))
        body = None
    return CapturedResponse(status_code=200, headers={}, body=body)


def instrument_endpoint(
    endpoint: Optional[Endpoint] = None,
    *,
    treblle: Optional[Treblle] = None,
    **options,
) -> Any:
    """
    Decorator que reporta cada chamada do endpoint.

    O endpoint recebe uma cópia da request com o body já lido; o valor
    retornado (ou a exceção levantada) chega ao host sem alteração.
    """
    engine = Treblle.resolve(treblle, **options)

    def decorator(func: Endpoint) -> Callable[..., Awaitable[Any]]:

        @functools.wraps(func)
        async def wrapper(request: Request, *args, **kwargs) -> Any:
            if not engine.should_capture(request.url.path):
                return await _call(func, request, *args, **kwargs)

            started_at = datetime.now(timezone.utc)
            start = time.perf_counter_ns()

            try:
                clone = await clone_request(request)
                captured_request = request_from_scope(request.scope, await request.body(), started_at)
            except Exception as e:
                logger.warning("Falha ao clonar request, seguindo sem instrumentação", error=str(e))
                engine.instrumentation_failed(ADAPTER, "clone", e)
                return await _call(func, request, *args, **kwargs)

            try:
                result = await _call(func, clone, *args, **kwargs)
                captured_response = await _captured_result(result)
            except Exception as exc:
                await engine.report(
                    captured_request,
                    None,
                    time.perf_counter_ns() - start,
                    error=exc,
                    adapter=ADAPTER,
                )
                raise

            elapsed = time.perf_counter_ns() - start
            await engine.report(captured_request, captured_response, elapsed, adapter=ADAPTER)
            return result

        wrapper.treblle = engine
        return wrapper

    if endpoint is not None:
        return decorator(endpoint)
    return decorator
