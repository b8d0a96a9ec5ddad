"""
Fixtures compartilhadas pelos testes.
"""

import pytest

from treblle.engine import Treblle
from treblle.sender import TreblleClient

API_KEY = "test-api-key"
PROJECT_ID = "test-project"


class RecordingClient(TreblleClient):
    """Cliente que registra os payloads em vez de enviá-los."""

    def __init__(self):
        super().__init__(endpoint="http://collector.test")
        self.payloads = []
        self.api_keys = []

    def dispatch(self, payload, api_key):
        self.stats['dispatched'] += 1
        self.payloads.append(payload)
        self.api_keys.append(api_key)


@pytest.fixture
def recording_client():
    return RecordingClient()


@pytest.fixture
def make_engine(recording_client):
    """Factory de motores que usam o cliente de gravação."""

    def factory(**options):
        return Treblle(
            api_key=API_KEY,
            project_id=PROJECT_ID,
            client=recording_client,
            **options
        )

    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()
