"""
Motor de instrumentação compartilhado pelos adaptadores
Filtro de paths -> construção do payload -> envio em background
"""
import asyncio
import dataclasses
import threading
from typing import Any, Dict, Iterable, Optional, Set

import structlog

from .body import is_multipart
from .capture import parse_multipart
from .config import config_manager
from .filters import BlocklistPaths, PathFilter
from .masking import create_masker
from .metrics import CAPTURED_ERRORS, INSTRUMENTATION_ERRORS, PAYLOADS_BUILT, REQUESTS_SKIPPED, PerformanceTimer
from .models import CapturedRequest, CapturedResponse, TelemetryPayload
from .payload import PayloadBuilder
from .sender import TREBLLE_ENDPOINT, TreblleClient

logger = structlog.get_logger(__name__)


class Treblle:
    """
    Estado compartilhado de uma instalação.

    Campos mascarados, filtros de paths, builder e cliente são montados uma
    vez e só lidos depois; o estado de cada request fica com o adaptador.
    """

    def __init__(
        self,
        api_key: str,
        project_id: str,
        additional_fields_to_mask: Optional[Iterable[str]] = None,
        blocklist_paths: BlocklistPaths = None,
        show_errors: bool = False,
        ignore_admin_routes: Optional[Iterable[str]] = None,
        client: Optional[TreblleClient] = None,
        endpoint: str = TREBLLE_ENDPOINT,
        timeout: float = 10.0,
    ):
        if not api_key:
            raise ValueError("api_key é obrigatório")
        if not project_id:
            raise ValueError("project_id é obrigatório")

        self.api_key = api_key
        self.project_id = project_id
        self.show_errors = show_errors

        self.masker = create_masker(additional_fields_to_mask)
        self.path_filter = PathFilter(blocklist_paths, ignore_admin_routes)
        self.builder = PayloadBuilder(api_key, project_id, self.masker)
        self.client = client or TreblleClient(endpoint=endpoint, timeout=timeout, show_errors=show_errors)

        self._background: Set[asyncio.Task] = set()

        self.stats = {
            'skipped': 0,
            'reported': 0,
            'captured_errors': 0,
            'instrumentation_errors': 0,
        }

        logger.info(
            "Instrumentação Treblle inicializada",
            project_id=project_id,
            masked_fields=len(self.masker.fields_to_mask),
            show_errors=show_errors,
        )

    @classmethod
    def from_settings(cls, settings=None, **overrides) -> "Treblle":
        """Cria o motor a partir de TreblleSettings (ambiente + YAML)"""
        if settings is None:
            settings = config_manager.settings

        options = settings.engine_options()
        options.update(overrides)
        return cls(**options)

    @classmethod
    def resolve(cls, treblle: Optional["Treblle"] = None, **options) -> "Treblle":
        """Motor pronto, ou um novo a partir das opções de instalação"""
        if treblle is not None:
            if options:
                raise TypeError("Passe um motor Treblle ou opções de instalação, não ambos")
            return treblle
        if options:
            return cls(**options)
        return cls.from_settings()

    def should_capture(self, path: str) -> bool:
        """Filtros de path: rotas administrativas primeiro, depois a blocklist"""
        reason = self.path_filter.skip_reason(path)
        if reason is None:
            return True

        self.stats['skipped'] += 1
        REQUESTS_SKIPPED.labels(reason=reason).inc()
        logger.debug("Request ignorada pela instrumentação", path=path, reason=reason)
        return False

    def build(
        self,
        request: CapturedRequest,
        response: Optional[CapturedResponse] = None,
        elapsed_ns: Optional[int] = None,
        error: Optional[BaseException] = None,
        adapter: str = "asgi",
    ) -> TelemetryPayload:
        with PerformanceTimer():
            payload = self.builder.build(request, response, elapsed_ns, error)

        PAYLOADS_BUILT.labels(adapter=adapter).inc()
        for entry in payload.data.errors:
            CAPTURED_ERRORS.labels(type=entry.type).inc()
        self.stats['captured_errors'] += len(payload.data.errors)
        self.stats['reported'] += 1
        return payload

    async def report(
        self,
        request: CapturedRequest,
        response: Optional[CapturedResponse] = None,
        elapsed_ns: Optional[int] = None,
        error: Optional[BaseException] = None,
        adapter: str = "asgi",
    ) -> Optional[TelemetryPayload]:
        """
        Constrói e despacha o payload de um ciclo request/response.

        Nunca levanta exceção: falhas internas são logadas e contadas.
        """
        try:
            request = await self._resolve_form_body(request)
            payload = self.build(request, response, elapsed_ns, error, adapter)
            self.client.dispatch(payload, self.api_key)
            return payload
        except Exception as e:
            self.instrumentation_failed(adapter, "report", e)
            return None

    def report_in_background(
        self,
        request: CapturedRequest,
        response: Optional[CapturedResponse] = None,
        elapsed_ns: Optional[int] = None,
        error: Optional[BaseException] = None,
        adapter: str = "asgi",
    ) -> None:
        """`report` agendado, para caminhos síncronos que não podem aguardar"""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            task = loop.create_task(self.report(request, response, elapsed_ns, error, adapter))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return

        # asyncio.run cancela tasks pendentes ao sair; o envio precisa terminar antes
        async def report_and_wait():
            await self.report(request, response, elapsed_ns, error, adapter)
            await self.client.wait_closed()

        threading.Thread(target=asyncio.run, args=(report_and_wait(),), name="treblle-report", daemon=True).start()

    async def wait_closed(self) -> None:
        """Aguarda relatórios e envios pendentes"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.client.wait_closed()

    def instrumentation_failed(self, adapter: str, stage: str, error: Exception) -> None:
        """Registra uma falha interna; a request do host segue normalmente"""
        self.stats['instrumentation_errors'] += 1
        INSTRUMENTATION_ERRORS.labels(adapter=adapter, stage=stage).inc()
        logger.error(
            "Erro interno na instrumentação Treblle",
            adapter=adapter,
            stage=stage,
            error=str(error) or type(error).__name__,
        )

    async def _resolve_form_body(self, request: CapturedRequest) -> CapturedRequest:
        """Bodies multipart chegam crus; parseia com o parser de formulários do Starlette"""
        if not is_multipart(request.content_type):
            return request
        if not isinstance(request.body, (bytes, bytearray)) or not request.body:
            return request

        try:
            form = await parse_multipart(request.headers, bytes(request.body))
        except Exception as e:
            logger.warning("Falha ao parsear body multipart", error=str(e))
            form = None
        return dataclasses.replace(request, body=form)

    def get_stats(self) -> Dict[str, Any]:
        """Retorna estatísticas da instrumentação"""
        return {
            **self.stats,
            'project_id': self.project_id,
            'client': self.client.get_stats(),
        }
