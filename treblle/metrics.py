"""
Módulo de métricas da instrumentação
Contadores Prometheus de captura, envio e falhas internas
"""
import time
from typing import Optional

from prometheus_client import Counter, Histogram

# Métricas de captura
PAYLOADS_BUILT = Counter('treblle_payloads_built_total', 'Telemetry payloads built', ['adapter'])
REQUESTS_SKIPPED = Counter('treblle_requests_skipped_total', 'Requests bypassed by path filters', ['reason'])
CAPTURED_ERRORS = Counter('treblle_captured_errors_total', 'Errors recorded in payloads', ['type'])
INSTRUMENTATION_ERRORS = Counter(
    'treblle_instrumentation_errors_total',
    'Internal instrumentation failures absorbed at the adapter boundary',
    ['adapter', 'stage'],
)

# Métricas de envio
DELIVERIES = Counter('treblle_deliveries_total', 'Payload deliveries by outcome', ['outcome'])
DELIVERY_TIME = Histogram('treblle_delivery_seconds', 'Time spent posting payloads to the collector')
BUILD_TIME = Histogram('treblle_payload_build_seconds', 'Time spent building payloads')


class PerformanceTimer:
    """Context manager para medir a construção de payloads"""

    def __init__(self, histogram: Histogram = BUILD_TIME):
        self.histogram = histogram
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.histogram.observe(time.perf_counter() - self.start_time)

    @property
    def elapsed(self) -> float:
        if self.start_time is None:
            return 0.0
        return time.perf_counter() - self.start_time
