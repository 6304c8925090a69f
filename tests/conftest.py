"""
Shared fixtures for the medmigrate test suite.
"""

import pytest

from medmigrate.agents.mapping_agent import MappingAgent
from medmigrate.core.config import get_settings, reload_settings
from medmigrate.memory.mapping_memory import MAPPING_MEMORY_POLICY, MappingMemory
from medmigrate.memory.repository import InMemoryCacheRepository
from medmigrate.pipeline.destination import InMemoryDestination
from medmigrate.pipeline.orchestrator import MigrationOrchestrator
from medmigrate.storage.artifact_store import InMemoryArtifactStore


PATIENTS_CSV = (
    "id,first_name,last_name,email,phone,dob\n"
    "1,Alice,Smith,alice@x.com,555-123-4567,1992-06-15\n"
    "2,Bob,Jones,bob@y.com,555-987-6543,1985-01-02\n"
    "3,Carol,White,carol@z.com,555-222-3333,1970-12-31\n"
)

APPOINTMENTS_CSV = (
    "id,patient_id,provider,start_time,status\n"
    "a1,1,Dr. Lee,2024-03-01T10:00:00,booked\n"
    "a2,2,Dr. Lee,2024-03-02T11:30:00,completed\n"
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep caches and artifacts in tmp_path and AI backends switched off."""
    monkeypatch.setenv("MIGRATION_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("MIGRATION_STORAGE_DIR", str(tmp_path / "storage"))
    monkeypatch.setenv("MIGRATION_MASKING_SECRET", "test-masking-secret")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)
    reload_settings()
    yield
    get_settings.cache_clear()


@pytest.fixture
def patients_csv():
    return PATIENTS_CSV.encode("utf-8")


@pytest.fixture
def appointments_csv():
    return APPOINTMENTS_CSV.encode("utf-8")


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def destination():
    return InMemoryDestination()


@pytest.fixture
def mapping_memory():
    return MappingMemory(InMemoryCacheRepository(MAPPING_MEMORY_POLICY))


@pytest.fixture
def heuristic_agent(mapping_memory):
    """Mapping agent that never calls a remote AI backend."""
    return MappingAgent(use_mock=True, mapping_memory=mapping_memory)


@pytest.fixture
def orchestrator(store, destination, heuristic_agent, mapping_memory):
    return MigrationOrchestrator(
        store=store,
        destination=destination,
        mapping_agent=heuristic_agent,
        mapping_memory=mapping_memory,
    )
