"""
Treblle - Instrumentação de APIs

Captura cada ciclo request/response de aplicações ASGI (Starlette/FastAPI),
mascara dados sensíveis e envia um payload de telemetria ao coletor Treblle
sem atrasar nem alterar a resposta da aplicação.
"""

__version__ = "1.0.0"
__author__ = "Treblle Python Team"
__description__ = "API observability instrumentation for Starlette and FastAPI"

from .config import ConfigManager, TreblleSettings, config_manager
from .masking import FieldMasker, create_masker, mask_sensitive_values
from .models import TelemetryPayload
from .payload import PayloadBuilder
from .sender import TreblleClient
from .engine import Treblle
from .asgi import TreblleASGIMiddleware, install
from .middleware import TreblleMiddleware
from .fetch import instrument_endpoint
from .edge import instrument_event_handler
from .logging_config import configure_logging

__all__ = [
    'Treblle',
    'TreblleASGIMiddleware',
    'install',
    'TreblleMiddleware',
    'instrument_endpoint',
    'instrument_event_handler',
    'TreblleClient',
    'TreblleSettings',
    'ConfigManager',
    'config_manager',
    'FieldMasker',
    'create_masker',
    'mask_sensitive_values',
    'PayloadBuilder',
    'TelemetryPayload',
    'configure_logging'
]
