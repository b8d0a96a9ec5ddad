"""
Modelos de dados do payload de telemetria
Estrutura enviada ao coletor e dados capturados do host
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

INVALID_JSON = "INVALID_JSON"
UNHANDLED_EXCEPTION = "UNHANDLED_EXCEPTION"

SOURCE_ON_SHUTDOWN = "onShutdown"
SOURCE_ON_EXCEPTION = "onException"


class _WireModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class CapturedError(_WireModel):
    """Erro registrado no payload"""
    source: str
    type: str
    message: str
    file: Optional[str] = None
    line: Optional[int] = None


class ServerOS(_WireModel):
    name: str
    release: Optional[str] = None
    architecture: Optional[str] = None


class ServerInfo(_WireModel):
    timezone: Optional[str]
    os: ServerOS
    software: Optional[str] = None
    signature: Optional[str] = None
    protocol: Optional[str] = None


class LanguageInfo(_WireModel):
    name: str
    version: Optional[str] = None


class RequestInfo(_WireModel):
    timestamp: str
    ip: Optional[str]
    url: str
    user_agent: Optional[str]
    method: str
    headers: Dict[str, Any]
    body: Any = None


class ResponseInfo(_WireModel):
    headers: Optional[Dict[str, Any]]
    code: int = 500
    size: int = 0
    load_time: int
    body: Any = None


class PayloadData(_WireModel):
    server: ServerInfo
    language: LanguageInfo
    request: RequestInfo
    response: ResponseInfo
    errors: List[CapturedError] = []


class TelemetryPayload(_WireModel):
    """Payload enviado ao coletor; imutável depois de construído"""
    api_key: str
    project_id: str
    version: str
    sdk: str
    data: PayloadData

    def to_json(self) -> str:
        return self.model_dump_json()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CapturedRequest:
    """Request normalizada a partir do objeto do host"""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    ip: Optional[str] = None
    protocol: Optional[str] = None
    query_string: str = ""
    body: Any = None
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")


@dataclass
class CapturedResponse:
    """Response normalizada; body é o conteúdo final enviado ao cliente"""
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def content_type(self) -> Optional[str]:
        return self.headers.get("content-type")
