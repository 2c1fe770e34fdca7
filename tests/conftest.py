import os
import sys

import httpx
import pytest

# Ensure repository root is on sys.path so `import livemonitor` works when running pytest.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    """Keep tests offline and deterministic even if the developer has a .env with live targets."""

    from livemonitor.core.settings import settings as app_settings

    monkeypatch.setattr(app_settings, "APP_ENV", "test", raising=False)
    monkeypatch.setattr(app_settings, "SUPABASE_PROJECT_ID", "testproj", raising=False)
    monkeypatch.setattr(app_settings, "SUPABASE_ANON_KEY", None, raising=False)
    monkeypatch.setattr(app_settings, "FUNCTIONS_BASE_URL", "https://{project_id}.example.test/functions/v1", raising=False)
    monkeypatch.setattr(app_settings, "CONTRACT_PATH", "", raising=False)
    monkeypatch.setattr(app_settings, "CODE_SCAN_PATH", "", raising=False)
    monkeypatch.setattr(app_settings, "MONITOR_AUTOSTART", False, raising=False)
    monkeypatch.setattr(app_settings, "REFRESH_POLL_SECONDS", 0, raising=False)
    monkeypatch.setattr(app_settings, "COLD_START_RETRY_DELAY_SECONDS", 0.0, raising=False)
    monkeypatch.setattr(app_settings, "PERF_LOG_INNER_ALWAYS", False, raising=False)
    monkeypatch.setattr(app_settings, "LOG_ENQUEUE", False, raising=False)
    yield


@pytest.fixture
def small_contract() -> dict:
    return {
        "version": 1,
        "teams": [{"id": "Dev A", "label": "Auth"}, {"id": "Dev B", "label": "Content"}],
        "waves": [
            {"id": 1, "name": "Wave 1", "description": "auth"},
            {"id": 2, "name": "Wave 2", "description": "content"},
        ],
        "route_groups": [
            {
                "id": "Auth",
                "owner": "Dev A",
                "wave": 1,
                "probe": {"path": "/auth/me", "method": "GET"},
                "routes": ["POST /auth/signin", "GET /auth/me"],
            },
            {
                "id": "Courses",
                "owner": "Dev B",
                "wave": 2,
                "probe": {"path": "/courses", "method": "GET"},
                "routes": ["GET /courses", "GET /courses/:id"],
            },
        ],
        "kv_patterns": [
            {"pattern": "user", "kind": "primary", "owner": "Dev A", "wave": 1},
            {"pattern": "course", "kind": "primary", "owner": "Dev B", "wave": 2},
            {"pattern": "idx:inst-courses", "kind": "index", "owner": "Dev B", "wave": 2},
        ],
    }


@pytest.fixture
def small_registry(small_contract):
    from livemonitor.registry.loader import build_registry

    return build_registry(small_contract)


@pytest.fixture
def make_client():
    """Build an AsyncClient whose requests are answered by `handler(request)`."""

    def _make(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make
