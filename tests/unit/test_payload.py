#!/usr/bin/env python3
"""
Testes unitários para a construção do payload.
"""

import json
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest
from treblle import __version__
from treblle import payload as payload_module
from treblle.masking import create_masker
from treblle.models import CapturedRequest, CapturedResponse
from treblle.payload import (
    DEFAULT_LOAD_TIME,
    PayloadBuilder,
    body_size,
    format_timestamp,
    load_time_micros,
    server_timezone,
    zone_name,
)


def make_request(**overrides):
    values = {
        "method": "POST",
        "url": "http://api.test/users?x=1",
        "headers": {"content-type": "application/json", "user-agent": "pytest"},
        "ip": "10.0.0.1",
        "protocol": "HTTP/1.1",
        "query_string": "x=1",
        "body": b'{"name": "Ana", "password": "hunter2"}',
        "started_at": datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return CapturedRequest(**values)


def make_response(**overrides):
    values = {
        "status_code": 201,
        "headers": {"content-type": "application/json"},
        "body": b'{"id": 7, "password": "hunter2"}',
    }
    values.update(overrides)
    return CapturedResponse(**values)


def raise_value_error():
    raise ValueError("boom")


class TestPayloadBuilder:
    """Testes para a classe PayloadBuilder."""

    def setup_method(self):
        """Configuração para cada teste."""
        self.builder = PayloadBuilder("key", "project", create_masker(["authorization"]))

    def test_build_success_payload(self):
        """Testa payload de um ciclo bem-sucedido."""
        payload = self.builder.build(make_request(), make_response(), elapsed_ns=2_500_000)

        assert payload.api_key == "key"
        assert payload.project_id == "project"
        assert payload.version == __version__
        assert payload.sdk == "python"

        request = payload.data.request
        assert request.timestamp == "2024-05-01 12:30:45"
        assert request.ip == "10.0.0.1"
        assert request.url == "http://api.test/users?x=1"
        assert request.user_agent == "pytest"
        assert request.method == "POST"
        assert request.body == {"name": "Ana", "password": "*******"}

        response = payload.data.response
        assert response.code == 201
        assert response.load_time == 2500
        assert response.body == {"id": 7, "password": "*******"}
        assert response.size == len(json.dumps(response.body, separators=(",", ":")))

        assert payload.data.server.protocol == "HTTP/1.1"
        assert payload.data.language.name == "python"
        assert payload.data.errors == []

    def test_headers_are_masked(self):
        """Testa mascaramento de headers de request e response."""
        request = make_request(headers={"authorization": "Bearer x", "content-type": "application/json"})
        response = make_response(headers={"authorization": "abc"})

        payload = self.builder.build(request, response, elapsed_ns=1000)

        assert payload.data.request.headers["authorization"] == "********"
        assert payload.data.response.headers == {"authorization": "***"}

    def test_error_without_response(self):
        """Testa payload do caminho de erro, sem response."""
        try:
            raise_value_error()
        except ValueError as e:
            error = e

        payload = self.builder.build(make_request(), None, elapsed_ns=None, error=error)

        response = payload.data.response
        assert response.code == 500
        assert response.size == 0
        assert response.headers is None
        assert response.body is None
        assert response.load_time == DEFAULT_LOAD_TIME

        [entry] = payload.data.errors
        assert entry.type == "UNHANDLED_EXCEPTION"
        assert entry.source == "onException"
        assert entry.message == "boom"
        assert entry.file == __file__
        assert entry.line == raise_value_error.__code__.co_firstlineno + 1

    def test_error_without_message_uses_class_name(self):
        """Testa erro sem mensagem."""
        payload = self.builder.build(make_request(), None, error=KeyError())

        assert payload.data.errors[0].message == "KeyError"
        assert payload.data.errors[0].file is None
        assert payload.data.errors[0].line is None

    def test_invalid_json_response(self):
        """Testa response declarada JSON com conteúdo inválido."""
        response = make_response(body=b"{broken")

        payload = self.builder.build(make_request(), response, elapsed_ns=1)

        assert payload.data.response.body is None
        assert payload.data.response.size == 0
        [entry] = payload.data.errors
        assert entry.type == "INVALID_JSON"
        assert entry.source == "onShutdown"
        assert entry.message == "Response in invalid JSON format"

    def test_invalid_json_precedes_exception(self):
        """Testa ordem das entradas de erro quando coexistem."""
        request = make_request(body=b"{broken")

        payload = self.builder.build(request, None, error=RuntimeError("x"))

        assert [e.type for e in payload.data.errors] == ["INVALID_JSON", "UNHANDLED_EXCEPTION"]
        assert payload.data.errors[0].message == "Request in invalid JSON format"

    def test_get_request_uses_query(self):
        """Testa body de GET a partir da query string."""
        request = make_request(method="GET", body=b"", query_string="q=hello&q=world")

        payload = self.builder.build(request, make_response(), elapsed_ns=1)

        assert payload.data.request.body == {"q": "world"}

    def test_payload_serialization(self):
        """Testa serialização JSON do payload."""
        payload = self.builder.build(make_request(), make_response(), elapsed_ns=1)

        data = json.loads(payload.to_json())

        assert data["api_key"] == "key"
        assert data["data"]["server"]["software"] is None
        assert data["data"]["server"]["signature"] is None
        assert data["data"]["request"]["body"]["password"] == "*******"
        assert isinstance(data["data"]["errors"], list)

    def test_payload_is_immutable(self):
        """Testa que o payload não pode ser alterado depois de construído."""
        payload = self.builder.build(make_request(), make_response(), elapsed_ns=1)

        with pytest.raises(Exception):
            payload.api_key = "other"


class TestPayloadHelpers:
    """Testes para funções auxiliares do payload."""

    def test_load_time_rounds_up(self):
        """Testa arredondamento para cima em microssegundos."""
        assert load_time_micros(1) == 1
        assert load_time_micros(1001) == 2
        assert load_time_micros(2000) == 2

    def test_load_time_sentinel(self):
        """Testa valor padrão quando não há medição."""
        assert load_time_micros(None) == DEFAULT_LOAD_TIME
        assert load_time_micros(0) == DEFAULT_LOAD_TIME

    def test_format_timestamp_converts_to_utc(self):
        """Testa conversão do timestamp para UTC."""
        moment = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone(timedelta(hours=-3)))

        assert format_timestamp(moment) == "2024-01-01 13:00:00"

    def test_body_size(self):
        """Testa tamanho do body em bytes."""
        assert body_size(None) == 0
        assert body_size("olá") == 4
        assert body_size({"a": 1}) == len('{"a":1}')


def zone_database_has(name):
    try:
        ZoneInfo(name)
    except ZoneInfoNotFoundError:
        return False
    return True


class TestServerTimezone:
    """Testes para o fuso horário reportado no payload."""

    @pytest.mark.skipif(not zone_database_has("Europe/Berlin"), reason="base de fusos indisponível")
    def test_tz_variable_gives_iana_name(self, monkeypatch):
        """Testa nome IANA vindo da variável TZ."""
        monkeypatch.setenv("TZ", "Europe/Berlin")

        assert server_timezone() == "Europe/Berlin"

    @pytest.mark.skipif(not zone_database_has("America/Sao_Paulo"), reason="base de fusos indisponível")
    def test_localtime_link_gives_iana_name(self, monkeypatch):
        """Testa nome IANA a partir do alvo de /etc/localtime."""
        monkeypatch.delenv("TZ", raising=False)
        monkeypatch.setattr(payload_module.os.path, "realpath", lambda path: "/usr/share/zoneinfo/America/Sao_Paulo")
        payload_module.localtime_zone.cache_clear()

        try:
            assert server_timezone() == "America/Sao_Paulo"
        finally:
            payload_module.localtime_zone.cache_clear()

    def test_unknown_zone_falls_back_to_abbreviation(self, monkeypatch):
        """Testa TZ desconhecido e sem link: abreviação local."""
        monkeypatch.setenv("TZ", "Nowhere/Atlantis")
        monkeypatch.setattr(payload_module, "localtime_zone", lambda: None)

        assert server_timezone() == datetime.now().astimezone().tzname()

    def test_zone_name_rejects_paths(self):
        """Testa valores de TZ que não são nomes de fuso."""
        assert zone_name(None) is None
        assert zone_name(":/etc/localtime") is None
