import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    """Point persisted state at a temp dir and reset process-wide counters."""
    from src.devbeaver.security.rate_limit import reset_rate_limits
    from src.devbeaver.services import generation

    monkeypatch.setenv("DEVBEAVER_DATA_DIR", str(tmp_path / "db"))
    monkeypatch.delenv("DEVBEAVER_CROSS_PROCESS_LOCKS", raising=False)
    monkeypatch.delenv("DEVBEAVER_RATE_LIMIT_FORCE", raising=False)
    monkeypatch.setattr(generation, "_BREAKER_STATE", {"fails": 0, "opened_at": 0.0})
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def store(tmp_path):
    from src.devbeaver.infrastructure.user_store import FileUserStateStore

    return FileUserStateStore(tmp_path / "db")


@pytest.fixture
def synchronizer(store):
    from src.devbeaver.infrastructure.locks import StateSynchronizer

    return StateSynchronizer(store.root, timeout=5.0, lease_seconds=60.0, cross_process=False)


@pytest.fixture
def make_orchestrator(store, synchronizer):
    from src.devbeaver.services.orchestrator import SiteOrchestrator

    def _make(client, sync=None):
        return SiteOrchestrator(store, client, sync or synchronizer)

    return _make
