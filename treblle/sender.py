"""
Cliente de envio de payloads para o coletor Treblle
Envio fire-and-forget: uma única tentativa, falhas nunca chegam à aplicação
"""
import asyncio
import threading
import time
import weakref
from typing import Any, Dict, Optional, Set

import httpx
import structlog

from .metrics import DELIVERIES, DELIVERY_TIME
from .models import TelemetryPayload

logger = structlog.get_logger(__name__)

TREBLLE_ENDPOINT = "https://rocknrolla.treblle.com"

CONNECTION_LIMITS = httpx.Limits(max_connections=20, max_keepalive_connections=10)


class TreblleClient:
    """Cliente HTTP do coletor"""

    def __init__(
        self,
        endpoint: str = TREBLLE_ENDPOINT,
        timeout: float = 10.0,
        show_errors: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.timeout = timeout
        self.show_errors = show_errors
        # usado em testes (httpx.MockTransport serve para os dois clientes)
        self.transport = transport

        self._tasks: Set[asyncio.Task] = set()

        # conexões reaproveitadas entre envios; cada cliente async pertence a um event loop
        self._clients: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, httpx.AsyncClient]" = (
            weakref.WeakKeyDictionary()
        )
        self._sync_client: Optional[httpx.Client] = None
        self._sync_lock = threading.Lock()

        self.stats = {
            'dispatched': 0,
            'delivered': 0,
            'rejected': 0,
            'failed': 0,
        }

    def dispatch(self, payload: TelemetryPayload, api_key: str) -> None:
        """
        Agenda o envio do payload e retorna imediatamente.

        Com um event loop rodando o envio vira uma task; sem loop (código
        síncrono) roda em uma thread daemon com cliente síncrono.
        """
        self.stats['dispatched'] += 1

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self.send(payload, api_key))
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)
            return

        thread = threading.Thread(
            target=self.send_blocking,
            args=(payload, api_key),
            name="treblle-sender",
            daemon=True,
        )
        thread.start()

    async def send(self, payload: TelemetryPayload, api_key: str) -> None:
        """Envia o payload; nunca levanta exceção"""
        start = time.perf_counter()
        try:
            response = await self.async_client().post(
                self.endpoint,
                content=payload.to_json(),
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as e:
            self._request_failed(e)
            return
        finally:
            DELIVERY_TIME.observe(time.perf_counter() - start)

        self._handle_response(response)

    def send_blocking(self, payload: TelemetryPayload, api_key: str) -> None:
        """Versão síncrona de `send`"""
        start = time.perf_counter()
        try:
            response = self.blocking_client().post(
                self.endpoint,
                content=payload.to_json(),
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as e:
            self._request_failed(e)
            return
        except Exception as e:
            logger.error("Erro inesperado no envio para o Treblle", error=str(e))
            self.stats['failed'] += 1
            DELIVERIES.labels(outcome='error').inc()
            return
        finally:
            DELIVERY_TIME.observe(time.perf_counter() - start)

        self._handle_response(response)

    def async_client(self) -> httpx.AsyncClient:
        """Cliente HTTP do event loop atual, criado no primeiro envio"""
        loop = asyncio.get_running_loop()
        client = self._clients.get(loop)
        if client is None or client.is_closed:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=CONNECTION_LIMITS,
                transport=self.transport,
            )
            self._clients[loop] = client
        return client

    def blocking_client(self) -> httpx.Client:
        """Cliente síncrono compartilhado pelas threads de envio"""
        with self._sync_lock:
            if self._sync_client is None or self._sync_client.is_closed:
                self._sync_client = httpx.Client(
                    timeout=httpx.Timeout(self.timeout),
                    limits=CONNECTION_LIMITS,
                    transport=self.transport,
                )
            return self._sync_client

    async def wait_closed(self) -> None:
        """Aguarda os envios pendentes e fecha o cliente HTTP do loop (shutdown e testes)"""
        loop = asyncio.get_running_loop()
        while True:
            pending = [task for task in self._tasks if task.get_loop() is loop and not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

        client = self._clients.pop(loop, None)
        if client is not None:
            await client.aclose()

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'x-api-key': api_key,
        }

    def _handle_response(self, response: httpx.Response) -> None:
        if response.is_success:
            self.stats['delivered'] += 1
            DELIVERIES.labels(outcome='delivered').inc()
            return

        self.stats['rejected'] += 1
        DELIVERIES.labels(outcome='rejected').inc()

        if self.show_errors:
            self._log_rejection(response)

    def _log_rejection(self, response: httpx.Response) -> None:
        """Loga o corpo da rejeição: JSON, depois texto, depois só o status"""
        body: Any = None
        try:
            body = response.json()
        except ValueError:
            try:
                body = response.text
            except Exception:
                body = None

        logger.error(
            "Envio de dados para o Treblle falhou",
            status=response.status_code,
            reason=response.reason_phrase,
            body=body or None,
        )

    def _request_failed(self, error: Exception) -> None:
        self.stats['failed'] += 1
        DELIVERIES.labels(outcome='failed').inc()

        if self.show_errors:
            logger.error(
                "Envio de dados para o Treblle falhou (possível erro de rede)",
                error=str(error),
                endpoint=self.endpoint,
            )

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            self.stats['failed'] += 1
            DELIVERIES.labels(outcome='error').inc()
            logger.error("Erro inesperado no envio para o Treblle", error=str(error))

    def get_stats(self) -> Dict[str, Any]:
        """Retorna estatísticas do cliente"""
        return {
            **self.stats,
            'pending': len(self._tasks),
            'endpoint': self.endpoint,
            'timeout': self.timeout,
        }
