import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from commentary_bus.config import PipelineConfig, Settings
from commentary_bus.main import app
from commentary_bus.registry import ServiceRegistry, get_registry

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    # Short windows so watcher/tail tests finish quickly
    return Settings(
        _env_file=None,
        SESSION_ROOT=str(tmp_path / "projects"),
        WATCH_DEBOUNCE_MS=50,
        TAIL_POLL_INTERVAL_MS=20,
        TAIL_RETRY_TIMEOUT_S=0.3,
        CBUS_TOKEN="",
    )


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig()


@pytest_asyncio.fixture
async def registry(test_settings, pipeline_config) -> AsyncGenerator[ServiceRegistry, None]:
    reg = ServiceRegistry(pipeline_config, test_settings)
    yield reg
    await reg.shutdown()


@pytest.fixture
def session_dir(test_settings) -> Path:
    path = Path(test_settings.SESSION_ROOT) / "-var-work-demo"
    path.mkdir(parents=True)
    return path


@pytest_asyncio.fixture
async def client(registry) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_registry] = lambda: registry
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
