#!/usr/bin/env python3
"""
Testes unitários para configurações e para o motor de instrumentação.
"""

import re

import pytest
import structlog
from treblle.config import ConfigManager, TreblleSettings
from treblle.engine import Treblle
from treblle.logging_config import configure_logging
from treblle.models import CapturedRequest


class TestTreblleSettings:
    """Testes para a classe TreblleSettings."""

    def test_defaults(self, monkeypatch):
        """Testa valores padrão."""
        monkeypatch.delenv("TREBLLE_API_KEY", raising=False)
        settings = TreblleSettings()

        assert settings.api_key == ""
        assert settings.endpoint == "https://rocknrolla.treblle.com"
        assert settings.timeout == 10.0
        assert settings.show_errors is False
        assert settings.blocklist() == []

    def test_environment_variables(self, monkeypatch):
        """Testa leitura de variáveis com prefixo TREBLLE_."""
        monkeypatch.setenv("TREBLLE_API_KEY", "env-key")
        monkeypatch.setenv("TREBLLE_PROJECT_ID", "env-project")
        monkeypatch.setenv("TREBLLE_ADDITIONAL_FIELDS_TO_MASK", '["token"]')
        monkeypatch.setenv("TREBLLE_SHOW_ERRORS", "true")

        settings = TreblleSettings()

        assert settings.api_key == "env-key"
        assert settings.project_id == "env-project"
        assert settings.additional_fields_to_mask == ["token"]
        assert settings.show_errors is True

    def test_invalid_values(self):
        """Testa validação de campos."""
        with pytest.raises(ValueError):
            TreblleSettings(log_level="LOUD")
        with pytest.raises(ValueError):
            TreblleSettings(timeout=0)
        with pytest.raises(ValueError):
            TreblleSettings(blocklist_pattern="([unclosed")

    def test_pattern_takes_precedence(self):
        """Testa que a expressão regular substitui os prefixos."""
        settings = TreblleSettings(blocklist_paths=["docs"], blocklist_pattern="^/metrics")

        blocklist = settings.blocklist()

        assert isinstance(blocklist, re.Pattern)
        assert blocklist.pattern == "^/metrics"

    def test_engine_options(self):
        """Testa argumentos gerados para o motor."""
        settings = TreblleSettings(api_key="k", project_id="p", ignore_admin_routes=["admin"])

        options = settings.engine_options()

        assert options["api_key"] == "k"
        assert options["project_id"] == "p"
        assert options["ignore_admin_routes"] == ["admin"]


class TestConfigManager:
    """Testes para a classe ConfigManager."""

    def test_load_yaml_file(self, tmp_path, monkeypatch):
        """Testa carregamento da seção treblle de um arquivo YAML."""
        monkeypatch.setenv("TREBLLE_API_KEY", "env-key")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "treblle:\n"
            "  project_id: yaml-project\n"
            "  blocklist_paths: [health, docs]\n"
            "  unknown_option: 1\n",
            encoding="utf-8",
        )

        manager = ConfigManager(config_path=str(config_file))

        assert manager.settings.api_key == "env-key"
        assert manager.settings.project_id == "yaml-project"
        assert manager.settings.blocklist_paths == ["health", "docs"]

    def test_missing_file(self, tmp_path):
        """Testa caminho inexistente."""
        manager = ConfigManager(config_path=str(tmp_path / "missing.yaml"))

        assert isinstance(manager.settings, TreblleSettings)

    def test_configure_logging(self):
        """Testa configuração do structlog."""
        try:
            configure_logging("debug", "console")

            assert structlog.is_configured()
            processors = structlog.get_config()["processors"]
            assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
        finally:
            structlog.reset_defaults()


class TestTreblleEngine:
    """Testes para a classe Treblle."""

    def test_requires_credentials(self):
        """Testa erro de configuração sem credenciais."""
        with pytest.raises(ValueError):
            Treblle(api_key="", project_id="p")
        with pytest.raises(ValueError):
            Treblle(api_key="k", project_id="")

    def test_from_settings(self, recording_client):
        """Testa criação do motor a partir das configurações."""
        settings = TreblleSettings(api_key="k", project_id="p", blocklist_paths=["health"])

        engine = Treblle.from_settings(settings, client=recording_client)

        assert engine.api_key == "k"
        assert not engine.should_capture("/health")
        assert engine.should_capture("/users")
        assert engine.get_stats()["skipped"] == 1

    def test_resolve_rejects_engine_and_options(self, engine):
        """Testa que motor pronto e opções não se misturam."""
        assert Treblle.resolve(engine) is engine
        with pytest.raises(TypeError):
            Treblle.resolve(engine, api_key="k")

    @pytest.mark.asyncio
    async def test_report_dispatches_payload(self, engine, recording_client):
        """Testa envio de um payload pelo motor."""
        request = CapturedRequest(method="GET", url="http://api.test/", query_string="a=1")

        payload = await engine.report(request, None, 5000)

        assert recording_client.payloads == [payload]
        assert recording_client.api_keys == ["test-api-key"]
        assert engine.get_stats()["reported"] == 1

    @pytest.mark.asyncio
    async def test_report_never_raises(self, engine, recording_client, monkeypatch):
        """Testa que falhas internas são absorvidas."""
        def broken_build(*args, **kwargs):
            raise RuntimeError("falha interna")

        monkeypatch.setattr(engine.builder, "build", broken_build)
        request = CapturedRequest(method="GET", url="http://api.test/")

        assert await engine.report(request) is None
        assert recording_client.payloads == []
        assert engine.get_stats()["instrumentation_errors"] == 1

    @pytest.mark.asyncio
    async def test_report_parses_multipart(self, engine, recording_client):
        """Testa parse de body multipart com o parser do Starlette."""
        body = (
            b"--xyz\r\n"
            b'Content-Disposition: form-data; name="user"\r\n\r\n'
            b"ana\r\n"
            b"--xyz\r\n"
            b'Content-Disposition: form-data; name="password"\r\n\r\n'
            b"s3cret\r\n"
            b"--xyz--\r\n"
        )
        request = CapturedRequest(
            method="POST",
            url="http://api.test/upload",
            headers={"content-type": "multipart/form-data; boundary=xyz"},
            body=body,
        )

        payload = await engine.report(request)

        assert payload.data.request.body == {"user": "ana", "password": "******"}
