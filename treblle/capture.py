"""
Captura de dados do host ASGI (Starlette/FastAPI)
Normaliza scope, bodies e responses em CapturedRequest/CapturedResponse
"""
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from starlette.datastructures import URL, Headers
from starlette.requests import Request
from starlette.responses import Response

from .body import flatten_form
from .models import CapturedRequest, CapturedResponse

Message = Dict[str, Any]
Receive = Callable[[], Awaitable[Message]]


def protocol_from_scope(scope: Dict[str, Any]) -> str:
    """`HTTP/1.1`, `HTTPS/2`..."""
    scheme = scope.get("scheme", "http").upper()
    http_version = scope.get("http_version")
    return f"{scheme}/{http_version}" if http_version else scheme


def client_ip(scope: Dict[str, Any]) -> Optional[str]:
    client = scope.get("client")
    return client[0] if client else None


def request_from_scope(
    scope: Dict[str, Any],
    body: Any = None,
    started_at: Optional[datetime] = None,
    ip: Optional[str] = None,
) -> CapturedRequest:
    """Monta um CapturedRequest a partir do scope ASGI"""
    headers = Headers(scope=scope)
    captured = CapturedRequest(
        method=scope.get("method", "GET"),
        url=str(URL(scope=scope)),
        headers=dict(headers.items()),
        ip=ip or client_ip(scope),
        protocol=protocol_from_scope(scope),
        query_string=scope.get("query_string", b"").decode("latin-1"),
        body=body,
    )
    if started_at is not None:
        captured.started_at = started_at
    return captured


def response_from_parts(status_code: int, headers: Any, body: Optional[bytes]) -> CapturedResponse:
    """Monta um CapturedResponse a partir de status, headers e body final"""
    if isinstance(headers, Headers):
        header_map = dict(headers.items())
    else:
        header_map = dict(Headers(raw=list(headers or [])).items())
    return CapturedResponse(status_code=status_code, headers=header_map, body=body)


def replay_receive(body: bytes, receive: Optional[Receive] = None) -> Receive:
    """Callable `receive` que entrega o body já lido e depois delega ao original"""
    delivered = False

    async def _receive() -> Message:
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": body, "more_body": False}
        if receive is not None:
            return await receive()
        return {"type": "http.disconnect"}

    return _receive


class ReceiveTee:
    """Registra os chunks do body da request conforme a aplicação os lê"""

    def __init__(self, receive: Receive):
        self._receive = receive
        self.chunks: List[bytes] = []
        self.complete = False

    async def __call__(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.request":
            self.chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                self.complete = True
        return message

    @property
    def body(self) -> bytes:
        return b"".join(self.chunks)

    async def drain(self) -> bytes:
        """Lê o que a aplicação não leu do body"""
        while not self.complete:
            message = await self()
            if message["type"] != "http.request":
                break
        return self.body

    def clear(self):
        self.chunks = []


async def clone_request(request: Request) -> Request:
    """
    Lê o body (single-read) e devolve uma cópia independente da request.

    O body fica em cache na request original e é reproduzido na cópia.
    """
    body = await request.body()
    return Request(request.scope, receive=replay_receive(body, request.receive))


async def _replay_iterator(chunks: List[bytes]) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


async def buffer_response(response: Response) -> Optional[bytes]:
    """
    Lê o body final da response sem alterar o que o servidor vai enviar.

    Responses em streaming são consumidas e o iterator é substituído por um
    que reproduz os mesmos chunks. FileResponse e similares devolvem None.
    """
    body_iterator = getattr(response, "body_iterator", None)
    if body_iterator is not None:
        chunks = []
        async for chunk in body_iterator:
            if isinstance(chunk, str):
                chunk = chunk.encode(getattr(response, "charset", "utf-8"))
            chunks.append(bytes(chunk))
        response.body_iterator = _replay_iterator(chunks)
        return b"".join(chunks)

    body = getattr(response, "body", None)
    if isinstance(body, (bytes, bytearray, memoryview)):
        return bytes(body)
    return None


async def parse_multipart(headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
    """Parseia um body multipart com o parser de formulários do Starlette"""
    raw_headers = [
        (key.lower().encode("latin-1"), value.encode("latin-1", errors="replace"))
        for key, value in headers.items()
    ]
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "query_string": b"",
        "headers": raw_headers,
    }
    request = Request(scope, receive=replay_receive(body))
    form = await request.form()
    try:
        return flatten_form(form)
    finally:
        await form.close()
