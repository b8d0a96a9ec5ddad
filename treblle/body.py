"""
Módulo de normalização de bodies
Converte bodies de request/response (bytes, texto, formulários) em valores JSON-compatíveis
"""
import json
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import parse_qsl

import structlog

logger = structlog.get_logger(__name__)

BodySource = Union[None, bytes, bytearray, str, Mapping, list]


class ContentType:
    """Content-types tratados explicitamente"""

    APPLICATION_FORM_DATA = "application/x-www-form-urlencoded"
    MULTIPART_FORM_DATA = "multipart/form-data"
    JSON = "application/json"
    TEXT = "text/plain"


class InvalidJSONError(ValueError):
    """Body declarado como JSON que não pôde ser parseado"""


def is_json(content_type: str) -> bool:
    content_type = content_type.lower()
    return ContentType.JSON in content_type or "+json" in content_type


def is_multipart(content_type: Optional[str]) -> bool:
    return ContentType.MULTIPART_FORM_DATA in (content_type or "").lower()


def decode_body(body: Union[bytes, bytearray, str]) -> str:
    """Decodifica bytes como UTF-8 antes de qualquer tentativa de parse"""
    if isinstance(body, (bytes, bytearray)):
        return bytes(body).decode("utf-8", errors="replace")
    return body


def parse_query_string(query_string: Union[bytes, str, None]) -> Dict[str, str]:
    """
    Converte uma query string em dict.

    Em chaves repetidas vence o último valor (`?q=a&q=b` -> `{"q": "b"}`).
    """
    if not query_string:
        return {}
    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode("latin-1")
    return dict(parse_qsl(query_string, keep_blank_values=True))


def flatten_form(form: Mapping) -> Dict[str, Any]:
    """Achata um formulário multi-valor em chave -> valor (último vence)"""
    items = form.multi_items() if hasattr(form, "multi_items") else form.items()
    flattened = {}
    for key, value in items:
        # arquivos enviados são representados pelo nome
        if hasattr(value, "filename") and hasattr(value, "read"):
            value = value.filename
        flattened[key] = value
    return flattened


def parse_body(body: BodySource, content_type: Optional[str] = None) -> Any:
    """
    Normaliza um body em um valor JSON-compatível ou None.

    Levanta InvalidJSONError quando o content-type declara JSON e o conteúdo
    não é JSON válido; o chamador registra o erro e trata o body como ausente.
    """
    if body is None:
        return None

    if isinstance(body, Mapping):
        return flatten_form(body)

    if isinstance(body, (list, tuple)):
        return list(body)

    text = decode_body(body)
    content_type = (content_type or "").lower()

    # body vazio é body ausente, qualquer que seja o content-type
    if not text:
        return None

    if ContentType.APPLICATION_FORM_DATA in content_type:
        return parse_query_string(text)

    if ContentType.MULTIPART_FORM_DATA in content_type:
        # multipart precisa chegar já parseado pelo adapter
        logger.debug("Body multipart não parseado, ignorando")
        return None

    if ContentType.TEXT in content_type:
        return text

    if is_json(content_type):
        try:
            return json.loads(text)
        except ValueError as e:
            raise InvalidJSONError(str(e)) from e

    try:
        return json.loads(text)
    except ValueError:
        return text


def parse_request_body(
    body: BodySource,
    content_type: Optional[str] = None,
    method: str = "GET",
    query_string: Union[bytes, str, None] = None,
) -> Any:
    """Normaliza o body da request; GET sem body usa a query string"""
    if method.upper() == "GET" and not body:
        return parse_query_string(query_string)

    return parse_body(body, content_type)
