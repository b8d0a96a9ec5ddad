"""
Configurações da instrumentação Treblle
Gerencia credenciais, campos mascarados, filtros de paths e opções de envio
"""
import os
import re
from typing import Any, Dict, List, Optional, Union

import structlog
import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .sender import TREBLLE_ENDPOINT

logger = structlog.get_logger(__name__)


class TreblleSettings(BaseSettings):
    """Configurações principais da instrumentação"""

    model_config = SettingsConfigDict(env_prefix="TREBLLE_", case_sensitive=False)

    # Credenciais
    api_key: str = Field(default="", description="API key do projeto no Treblle")
    project_id: str = Field(default="", description="ID do projeto no Treblle")

    # Configurações de envio
    endpoint: str = Field(default=TREBLLE_ENDPOINT, description="URL do coletor")
    timeout: float = Field(default=10.0, description="Timeout do envio em segundos")
    show_errors: bool = Field(default=False, description="Logar falhas de envio ao coletor")

    # Configurações de privacidade
    additional_fields_to_mask: List[str] = Field(
        default=[],
        description="Campos adicionais a mascarar (somados aos padrões)"
    )

    # Configurações de filtros
    blocklist_paths: List[str] = Field(default=[], description="Prefixos de paths para ignorar")
    blocklist_pattern: Optional[str] = Field(
        default=None,
        description="Expressão regular de paths para ignorar (substitui blocklist_paths)"
    )
    ignore_admin_routes: List[str] = Field(
        default=[],
        description="Primeiro segmento de rotas administrativas para ignorar"
    )

    # Configurações de logging
    log_level: str = Field(default="INFO", description="Nível de log")
    log_format: str = Field(default="json", description="Formato do log (json ou console)")

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f'log_level deve ser um de: {valid_levels}')
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ('json', 'console'):
            raise ValueError('log_format deve ser json ou console')
        return v.lower()

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0 or v > 300:
            raise ValueError('timeout deve estar entre 0 e 300 segundos')
        return v

    @field_validator('blocklist_pattern')
    @classmethod
    def validate_blocklist_pattern(cls, v):
        if v is None:
            return v
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f'blocklist_pattern inválido: {e}')
        return v

    def blocklist(self) -> Union[List[str], "re.Pattern"]:
        """Blocklist efetiva: a expressão regular tem precedência"""
        if self.blocklist_pattern:
            return re.compile(self.blocklist_pattern)
        return list(self.blocklist_paths)

    def engine_options(self) -> Dict[str, Any]:
        """Argumentos para construir o motor de instrumentação"""
        return {
            'api_key': self.api_key,
            'project_id': self.project_id,
            'additional_fields_to_mask': list(self.additional_fields_to_mask),
            'blocklist_paths': self.blocklist(),
            'ignore_admin_routes': list(self.ignore_admin_routes),
            'show_errors': self.show_errors,
            'endpoint': self.endpoint,
            'timeout': self.timeout,
        }


class ConfigManager:
    """Gerenciador de configurações com suporte a arquivos YAML"""

    def __init__(self, config_path: Optional[str] = None):
        self.settings = TreblleSettings()

        if config_path and os.path.exists(config_path):
            self._load_config_file(config_path)

    def _load_config_file(self, config_path: str):
        """Carrega configurações de arquivo YAML (seção `treblle`)"""
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Erro ao carregar arquivo de configuração", path=config_path, error=str(e))
            return

        section = config_data.get('treblle') or {}
        unknown = [key for key in section if key not in TreblleSettings.model_fields]
        if unknown:
            logger.warning("Chaves desconhecidas no arquivo de configuração", keys=unknown)
        section = {key: value for key, value in section.items() if key not in unknown}
        if not section:
            return

        # Valores do arquivo sobrescrevem os do ambiente
        merged = {**self.settings.model_dump(), **section}
        self.settings = TreblleSettings(**merged)
        logger.debug("Configuração carregada de arquivo", path=config_path, keys=sorted(section))

    def configure_logging(self):
        """Aplica log_level/log_format no structlog"""
        from .logging_config import configure_logging

        configure_logging(self.settings.log_level, self.settings.log_format)


# Instância global do gerenciador de configurações
config_manager = ConfigManager(config_path=os.getenv('TREBLLE_CONFIG_PATH'))
