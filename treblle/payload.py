"""
Construção do payload de telemetria
Coordena normalização de bodies, mascaramento e metadados de servidor/linguagem
"""
import json
import math
import os
import platform
import traceback
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from . import __version__
from .body import InvalidJSONError, parse_body, parse_request_body
from .masking import FieldMasker
from .models import (
    INVALID_JSON,
    SOURCE_ON_EXCEPTION,
    SOURCE_ON_SHUTDOWN,
    UNHANDLED_EXCEPTION,
    CapturedError,
    CapturedRequest,
    CapturedResponse,
    LanguageInfo,
    PayloadData,
    RequestInfo,
    ResponseInfo,
    ServerInfo,
    ServerOS,
    TelemetryPayload,
)

logger = structlog.get_logger(__name__)

SDK_NAME = "python"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Usado quando não há medição de tempo (ou ela é zero)
DEFAULT_LOAD_TIME = 1000


@lru_cache(maxsize=1)
def server_os() -> ServerOS:
    """Informações do sistema operacional, lidas uma vez por processo"""
    return ServerOS(
        name=platform.system().lower() or "unknown",
        release=platform.release() or None,
        architecture=platform.machine() or None,
    )


@lru_cache(maxsize=1)
def language_info() -> LanguageInfo:
    return LanguageInfo(name=SDK_NAME, version=platform.python_version())


LOCALTIME_PATH = "/etc/localtime"


def zone_name(name: Optional[str]) -> Optional[str]:
    """Nome IANA validado (`Europe/Berlin`), ou None se a base de fusos não o conhece"""
    if not name:
        return None
    try:
        return ZoneInfo(name.lstrip(":")).key
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return None


@lru_cache(maxsize=1)
def localtime_zone() -> Optional[str]:
    """Fuso configurado no sistema, pelo alvo do link /etc/localtime"""
    target = os.path.realpath(LOCALTIME_PATH)
    _, found, name = target.partition("zoneinfo/")
    return zone_name(name) if found else None


def server_timezone() -> Optional[str]:
    """
    Fuso do servidor pelo nome IANA.

    Ordem: variável TZ, link /etc/localtime e, sem nenhum dos dois, a
    abreviação local (`UTC`, `CEST`).
    """
    return (
        zone_name(os.environ.get("TZ"))
        or localtime_zone()
        or datetime.now().astimezone().tzname()
    )


def format_timestamp(moment: datetime) -> str:
    """Formata em UTC como `YYYY-MM-DD HH:MM:SS`"""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


def load_time_micros(elapsed_ns: Optional[int]) -> int:
    """Converte nanossegundos em microssegundos arredondando para cima"""
    if not elapsed_ns or elapsed_ns <= 0:
        return DEFAULT_LOAD_TIME
    return math.ceil(elapsed_ns / 1000)


def body_size(body: Any) -> int:
    """Tamanho em bytes do body final (já mascarado)"""
    if body is None:
        return 0
    if isinstance(body, str):
        return len(body.encode("utf-8"))
    try:
        serialized = json.dumps(body, separators=(",", ":"), ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return 0
    return len(serialized.encode("utf-8"))


def error_location(error: BaseException) -> Tuple[Optional[str], Optional[int]]:
    """Arquivo e linha do frame onde a exceção foi levantada"""
    frames = traceback.extract_tb(error.__traceback__)
    if not frames:
        return None, None
    frame = frames[-1]
    return frame.filename, frame.lineno


class PayloadBuilder:
    """Constrói um TelemetryPayload por ciclo request/response"""

    def __init__(self, api_key: str, project_id: str, masker: FieldMasker, sdk_name: str = SDK_NAME):
        self.api_key = api_key
        self.project_id = project_id
        self.masker = masker
        self.sdk_name = sdk_name

    def build(
        self,
        request: CapturedRequest,
        response: Optional[CapturedResponse] = None,
        elapsed_ns: Optional[int] = None,
        error: Optional[BaseException] = None,
    ) -> TelemetryPayload:
        errors: List[CapturedError] = []

        try:
            request_body = parse_request_body(
                request.body,
                request.content_type,
                request.method,
                request.query_string,
            )
        except InvalidJSONError:
            errors.append(self._invalid_json("Request in invalid JSON format"))
            request_body = None

        response_body = None
        if response is not None:
            try:
                response_body = parse_body(response.body, response.content_type)
            except InvalidJSONError:
                errors.append(self._invalid_json("Response in invalid JSON format"))
                response_body = None

        if error is not None:
            errors.append(self._unhandled_exception(error))

        masked_request_body = self.masker.mask(request_body)
        masked_response_body = self.masker.mask(response_body)

        request_info = RequestInfo(
            timestamp=format_timestamp(request.started_at),
            ip=request.ip,
            url=request.url,
            user_agent=request.user_agent,
            method=request.method,
            headers=self.masker.mask_headers(request.headers) or {},
            body=masked_request_body,
        )

        if response is not None:
            response_info = ResponseInfo(
                headers=self.masker.mask_headers(response.headers),
                code=response.status_code,
                size=body_size(masked_response_body),
                load_time=load_time_micros(elapsed_ns),
                body=masked_response_body,
            )
        else:
            response_info = ResponseInfo(
                headers=None,
                code=500,
                size=0,
                load_time=load_time_micros(elapsed_ns),
                body=None,
            )

        return TelemetryPayload(
            api_key=self.api_key,
            project_id=self.project_id,
            version=__version__,
            sdk=self.sdk_name,
            data=PayloadData(
                server=ServerInfo(
                    timezone=server_timezone(),
                    os=server_os(),
                    protocol=request.protocol,
                ),
                language=language_info(),
                request=request_info,
                response=response_info,
                errors=errors,
            ),
        )

    @staticmethod
    def _invalid_json(message: str) -> CapturedError:
        return CapturedError(
            source=SOURCE_ON_SHUTDOWN,
            type=INVALID_JSON,
            message=message,
            file=None,
            line=None,
        )

    @staticmethod
    def _unhandled_exception(error: BaseException) -> CapturedError:
        file, line = error_location(error)
        return CapturedError(
            source=SOURCE_ON_EXCEPTION,
            type=UNHANDLED_EXCEPTION,
            message=str(error) or type(error).__name__,
            file=file,
            line=line,
        )
