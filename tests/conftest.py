import json
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.config.settings import clear_settings_cache
from gateway.main import create_app
from gateway.metrics import reset_metrics

INTERNAL_TOKEN = "internal-test-token"
RATE_LIMIT = 5

Responder = Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """Inference and search backends served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.overrides: dict[str, Responder] = {}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def calls_to(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        override = self.overrides.get(request.url.path)
        if override is not None:
            return override(request)

        path = request.url.path
        if path == "/api/generate":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "model": body["model"],
                    "response": "Hello from the model",
                    "done": True,
                    "prompt_eval_count": 7,
                    "eval_count": 5,
                },
            )
        if path == "/api/tags":
            return httpx.Response(
                200,
                json={
                    "models": [
                        {
                            "name": "llama3.2:latest",
                            "size": 2019393189,
                            "modified_at": "2026-09-01T10:00:00Z",
                        }
                    ]
                },
            )
        if path == "/api/embeddings":
            return httpx.Response(200, json={"embedding": [0.1, 0.2, 0.3, 0.4]})
        if path == "/search":
            query = request.url.params.get("q", "")
            return httpx.Response(
                200,
                json={
                    "query": query,
                    "count": 1,
                    "results": [
                        {
                            "title": "Result",
                            "url": "https://example.test/result",
                            "description": "A result",
                        }
                    ],
                },
            )
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def gateway_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("GATEWAY_IDENTITY_BACKEND", "sqlite")
    monkeypatch.setenv("GATEWAY_IDENTITY_DB_PATH", str(tmp_path / "identity.db"))
    monkeypatch.setenv("GATEWAY_AUDIT_BACKEND", "jsonl")
    monkeypatch.setenv("GATEWAY_AUDIT_LOG_PATH", str(tmp_path / "events.jsonl"))
    monkeypatch.setenv("GATEWAY_COUNTER_BACKEND", "memory")
    monkeypatch.setenv("GATEWAY_INTERNAL_TOKEN", INTERNAL_TOKEN)
    monkeypatch.setenv("GATEWAY_RATE_LIMIT_MAX_REQUESTS", str(RATE_LIMIT))
    monkeypatch.setenv("GATEWAY_INFERENCE_BASE_URL", "http://inference.internal")
    monkeypatch.setenv("GATEWAY_SEARCH_BASE_URL", "http://search.internal")
    clear_settings_cache()
    reset_metrics()
    return tmp_path


@pytest.fixture
def client(gateway_env: Path, backend: FakeBackend) -> TestClient:
    app = create_app(backend_transport=backend.transport)
    return TestClient(app)


@pytest.fixture
def api_key(client: TestClient) -> str:
    response = client.post("/api/keys/create", json={"name": "tests"})
    assert response.status_code == 200
    return str(response.json()["api_key"])


@pytest.fixture
def auth_headers(api_key: str) -> dict[str, str]:
    return {"X-API-Key": api_key, "User-Agent": "pytest-client"}


@pytest.fixture
def audit_events(gateway_env: Path) -> Callable[[], list[dict[str, object]]]:
    def _load() -> list[dict[str, object]]:
        log_path = gateway_env / "events.jsonl"
        if not log_path.exists():
            return []
        return [
            json.loads(line)
            for line in log_path.read_text(encoding="utf-8").splitlines()
            if line.strip()
        ]

    return _load
