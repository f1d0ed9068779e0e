import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from gateway.backends.base import normalize_token_usage
from gateway.backends.proxy import BackendProxy
from gateway.core.errors import BackendUnavailable
from gateway.routing.router import Capability


def _proxy(
    handler: Callable[[httpx.Request], httpx.Response], **overrides: Any
) -> tuple[BackendProxy, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    options: dict[str, Any] = {
        "inference_base_url": "http://inference.internal/",
        "search_base_url": "http://search.internal",
        "internal_token": "secret-token",
        "transport": httpx.MockTransport(_record),
    }
    options.update(overrides)
    return BackendProxy(**options), seen


def test_chat_sends_trust_header_and_normalizes_ollama_usage() -> None:
    proxy, seen = _proxy(
        lambda request: httpx.Response(
            200,
            json={"model": "llama3.2", "response": "hi", "prompt_eval_count": 3, "eval_count": 4},
        )
    )

    result = asyncio.run(proxy.call(Capability.CHAT, {"prompt": "hello"}))

    assert seen[0].url == "http://inference.internal/api/generate"
    assert seen[0].headers["x-internal-token"] == "secret-token"
    assert json.loads(seen[0].content) == {"model": "llama3.2", "prompt": "hello", "stream": False}
    assert result.payload["tokens"] == {"prompt": 3, "completion": 4, "total": 7}
    assert result.token_usage is not None
    assert result.token_usage.total == 7
    assert result.upstream_status == 200


def test_openai_style_usage_is_normalized() -> None:
    usage = normalize_token_usage({"usage": {"prompt_tokens": 11, "completion_tokens": 2}})
    assert usage.as_dict() == {"prompt": 11, "completion": 2, "total": 13}


def test_missing_or_invalid_usage_counts_are_zero() -> None:
    usage = normalize_token_usage({"prompt_eval_count": -5, "eval_count": "many"})
    assert usage.as_dict() == {"prompt": 0, "completion": 0, "total": 0}


def test_no_trust_header_without_configured_token() -> None:
    proxy, seen = _proxy(lambda request: httpx.Response(200, json={"models": []}), internal_token="")

    asyncio.run(proxy.models())

    assert "x-internal-token" not in seen[0].headers


def test_search_is_not_privileged() -> None:
    proxy, seen = _proxy(lambda request: httpx.Response(200, json={"results": []}))

    result = asyncio.run(proxy.search("python", count=3))

    assert "x-internal-token" not in seen[0].headers
    assert seen[0].url.params["q"] == "python"
    assert seen[0].url.params["count"] == "3"
    assert result.payload == {"query": "python", "results": []}


@pytest.mark.parametrize("status_code", [400, 404, 500, 502])
def test_non_success_status_maps_to_backend_unavailable(status_code: int) -> None:
    proxy, _ = _proxy(lambda request: httpx.Response(status_code, text="stack trace here"))

    with pytest.raises(BackendUnavailable) as exc_info:
        asyncio.run(proxy.models())

    assert exc_info.value.upstream_status == status_code
    assert exc_info.value.reason == "upstream_status"
    assert "stack trace" not in exc_info.value.message


def test_timeout_and_connection_errors_map_to_backend_unavailable() -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    def _refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    proxy, _ = _proxy(_timeout)
    with pytest.raises(BackendUnavailable) as timeout_info:
        asyncio.run(proxy.chat("hello"))
    assert timeout_info.value.reason == "timeout"

    proxy, _ = _proxy(_refused)
    with pytest.raises(BackendUnavailable) as refused_info:
        asyncio.run(proxy.chat("hello"))
    assert refused_info.value.reason == "connection_error"


def test_non_json_body_maps_to_backend_unavailable() -> None:
    proxy, _ = _proxy(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(BackendUnavailable) as exc_info:
        asyncio.run(proxy.chat("hello"))

    assert exc_info.value.reason == "invalid_body"


def test_missing_embedding_maps_to_backend_unavailable() -> None:
    proxy, _ = _proxy(lambda request: httpx.Response(200, json={"embedding": []}))

    with pytest.raises(BackendUnavailable) as exc_info:
        asyncio.run(proxy.embeddings("hello"))

    assert exc_info.value.reason == "missing_field"


def test_vector_lookup_runs_embeddings_before_search() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/embeddings":
            return httpx.Response(200, json={"embedding": [0.5, 0.25]})
        return httpx.Response(200, json={"results": [{"title": "hit"}]})

    proxy, seen = _proxy(_handler, search_vector_lookup=True)

    result = asyncio.run(proxy.search("edge"))

    assert [request.url.path for request in seen] == ["/api/embeddings", "/search"]
    search_body = json.loads(seen[1].content)
    assert search_body == {"query": "edge", "count": 10, "vector": [0.5, 0.25]}
    assert result.payload["results"] == [{"title": "hit"}]


def test_vector_lookup_failure_skips_search_call() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/embeddings":
            return httpx.Response(500)
        return httpx.Response(200, json={"results": []})

    proxy, seen = _proxy(_handler, search_vector_lookup=True)

    with pytest.raises(BackendUnavailable):
        asyncio.run(proxy.search("edge"))

    assert [request.url.path for request in seen] == ["/api/embeddings"]


def test_passthrough_without_configured_backend_is_unavailable() -> None:
    proxy, seen = _proxy(lambda request: httpx.Response(200, json={}))

    with pytest.raises(BackendUnavailable) as exc_info:
        asyncio.run(proxy.call(Capability.AGENTS, {"method": "POST", "path": "/run"}))

    assert exc_info.value.reason == "not_configured"
    assert seen == []


def test_passthrough_forwards_method_path_and_body() -> None:
    proxy, seen = _proxy(
        lambda request: httpx.Response(201, json={"id": "doc-1"}),
        documents_base_url="http://documents.internal",
    )

    result = asyncio.run(
        proxy.call(
            Capability.DOCUMENTS,
            {
                "method": "PUT",
                "path": "/reports/1",
                "query": {"version": "2"},
                "body": b'{"title": "Q3"}',
                "content_type": "application/json",
            },
        )
    )

    assert seen[0].method == "PUT"
    assert seen[0].url == "http://documents.internal/reports/1?version=2"
    assert seen[0].content == b'{"title": "Q3"}'
    assert "x-internal-token" not in seen[0].headers
    assert result.payload == {"id": "doc-1"}
    assert result.upstream_status == 201


def test_passthrough_accepts_empty_and_list_bodies() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(200, json=[{"id": "doc-1"}, {"id": "doc-2"}])

    proxy, _ = _proxy(_handler, documents_base_url="http://documents.internal")

    deleted = asyncio.run(
        proxy.call(Capability.DOCUMENTS, {"method": "DELETE", "path": "/reports/1"})
    )
    listed = asyncio.run(proxy.call(Capability.DOCUMENTS, {"method": "GET", "path": ""}))

    assert deleted.payload is None
    assert deleted.upstream_status == 204
    assert listed.payload == [{"id": "doc-1"}, {"id": "doc-2"}]


def test_fixed_capabilities_still_require_an_object_body() -> None:
    proxy, _ = _proxy(lambda request: httpx.Response(200, json=[{"name": "llama3.2"}]))

    with pytest.raises(BackendUnavailable) as exc_info:
        asyncio.run(proxy.models())

    assert exc_info.value.reason == "missing_field"
