"""Outbound calls to backend capabilities.

Every call goes through ``_request``, which owns the timeout, the trust
header for privileged backends, latency measurement and the mapping of
transport and HTTP failures to ``BackendUnavailable``.  Upstream error
bodies are logged by status only and never reach the client.
"""

import logging
from time import perf_counter
from typing import Any

import httpx

from gateway.backends.base import BackendCallResult, normalize_token_usage
from gateway.config.settings import Settings
from gateway.core.errors import BackendUnavailable
from gateway.routing.router import Capability

logger = logging.getLogger("gateway.backends")


class BackendProxy:
    def __init__(
        self,
        inference_base_url: str,
        search_base_url: str,
        internal_token: str = "",
        internal_token_header: str = "X-Internal-Token",
        documents_base_url: str | None = None,
        agents_base_url: str | None = None,
        default_model: str = "llama3.2",
        default_embedding_model: str = "nomic-embed-text",
        generation_timeout_s: float = 30.0,
        metadata_timeout_s: float = 5.0,
        search_timeout_s: float = 10.0,
        search_result_count: int = 10,
        search_vector_lookup: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._inference_base_url = inference_base_url.rstrip("/")
        self._search_base_url = search_base_url.rstrip("/")
        self._passthrough_base_urls = {
            Capability.DOCUMENTS: documents_base_url.rstrip("/") if documents_base_url else None,
            Capability.AGENTS: agents_base_url.rstrip("/") if agents_base_url else None,
        }
        self._internal_token = internal_token
        self._internal_token_header = internal_token_header
        self._default_model = default_model
        self._default_embedding_model = default_embedding_model
        self._generation_timeout_s = generation_timeout_s
        self._metadata_timeout_s = metadata_timeout_s
        self._search_timeout_s = search_timeout_s
        self._search_result_count = search_result_count
        self._search_vector_lookup = search_vector_lookup
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "BackendProxy":
        return cls(
            inference_base_url=settings.inference_base_url,
            search_base_url=settings.search_base_url,
            internal_token=settings.internal_token,
            internal_token_header=settings.internal_token_header,
            documents_base_url=settings.documents_base_url,
            agents_base_url=settings.agents_base_url,
            default_model=settings.default_model,
            default_embedding_model=settings.default_embedding_model,
            generation_timeout_s=settings.generation_timeout_s,
            metadata_timeout_s=settings.metadata_timeout_s,
            search_timeout_s=settings.search_timeout_s,
            search_result_count=settings.search_result_count,
            search_vector_lookup=settings.search_vector_lookup,
            transport=transport,
        )

    async def call(self, capability: Capability, payload: dict[str, Any]) -> BackendCallResult:
        if capability is Capability.CHAT:
            return await self.chat(
                prompt=payload["prompt"],
                model=payload.get("model"),
                options=payload.get("options"),
            )
        if capability is Capability.MODELS:
            return await self.models()
        if capability is Capability.EMBEDDINGS:
            return await self.embeddings(text=payload["text"], model=payload.get("model"))
        if capability is Capability.SEARCH:
            return await self.search(query=payload["query"], count=payload.get("count"))
        if capability in self._passthrough_base_urls:
            return await self.passthrough(capability, payload)
        raise ValueError(f"No backend for capability: {capability.value}")

    async def chat(
        self, prompt: str, model: str | None = None, options: dict[str, Any] | None = None
    ) -> BackendCallResult:
        selected_model = model or self._default_model
        body: dict[str, Any] = {"model": selected_model, "prompt": prompt, "stream": False}
        if options:
            body["options"] = options

        data, status, latency_ms = await self._request(
            Capability.CHAT,
            "POST",
            f"{self._inference_base_url}/api/generate",
            timeout_s=self._generation_timeout_s,
            privileged=True,
            json_body=body,
        )
        text = data.get("response")
        if not isinstance(text, str):
            raise self._missing_field(Capability.CHAT, "response", status)

        usage = normalize_token_usage(data)
        return BackendCallResult(
            payload={
                "response": text,
                "model": str(data.get("model") or selected_model),
                "tokens": usage.as_dict(),
                "latency_ms": latency_ms,
            },
            latency_ms=latency_ms,
            upstream_status=status,
            token_usage=usage,
        )

    async def models(self) -> BackendCallResult:
        data, status, latency_ms = await self._request(
            Capability.MODELS,
            "GET",
            f"{self._inference_base_url}/api/tags",
            timeout_s=self._metadata_timeout_s,
            privileged=True,
        )
        raw_models = data.get("models")
        if not isinstance(raw_models, list):
            raise self._missing_field(Capability.MODELS, "models", status)

        models = [
            {
                "name": item.get("name"),
                "size": item.get("size"),
                "modified": item.get("modified_at", item.get("modified")),
            }
            for item in raw_models
            if isinstance(item, dict)
        ]
        return BackendCallResult(
            payload={"models": models}, latency_ms=latency_ms, upstream_status=status
        )

    async def embeddings(self, text: str, model: str | None = None) -> BackendCallResult:
        data, status, latency_ms = await self._request(
            Capability.EMBEDDINGS,
            "POST",
            f"{self._inference_base_url}/api/embeddings",
            timeout_s=self._generation_timeout_s,
            privileged=True,
            json_body={"model": model or self._default_embedding_model, "prompt": text},
        )
        embedding = data.get("embedding")
        if not isinstance(embedding, list) or not embedding:
            raise self._missing_field(Capability.EMBEDDINGS, "embedding", status)

        return BackendCallResult(
            payload={"embedding": embedding, "dimensions": len(embedding)},
            latency_ms=latency_ms,
            upstream_status=status,
        )

    async def search(self, query: str, count: int | None = None) -> BackendCallResult:
        result_count = count or self._search_result_count
        url = f"{self._search_base_url}/search"
        latency_ms = 0

        if self._search_vector_lookup:
            # The vector is an input to the search call, so this runs strictly first.
            embedded = await self.embeddings(text=query)
            latency_ms += embedded.latency_ms
            data, status, search_latency_ms = await self._request(
                Capability.SEARCH,
                "POST",
                url,
                timeout_s=self._search_timeout_s,
                privileged=False,
                json_body={
                    "query": query,
                    "count": result_count,
                    "vector": embedded.payload["embedding"],
                },
            )
        else:
            data, status, search_latency_ms = await self._request(
                Capability.SEARCH,
                "GET",
                url,
                timeout_s=self._search_timeout_s,
                privileged=False,
                params={"q": query, "count": str(result_count)},
            )
        latency_ms += search_latency_ms

        results = data.get("results")
        if not isinstance(results, list):
            raise self._missing_field(Capability.SEARCH, "results", status)

        return BackendCallResult(
            payload={"query": query, "results": results},
            latency_ms=latency_ms,
            upstream_status=status,
        )

    async def passthrough(
        self, capability: Capability, payload: dict[str, Any]
    ) -> BackendCallResult:
        base_url = self._passthrough_base_urls.get(capability)
        if not base_url:
            logger.warning(
                "backend_not_configured",
                extra={"capability": capability.value},
            )
            raise BackendUnavailable(reason="not_configured")

        headers: dict[str, str] = {}
        content_type = payload.get("content_type")
        if content_type:
            headers["Content-Type"] = str(content_type)

        data, status, latency_ms = await self._request(
            capability,
            str(payload.get("method", "GET")),
            f"{base_url}{payload.get('path', '')}",
            timeout_s=self._generation_timeout_s,
            privileged=False,
            params=payload.get("query") or None,
            content=payload.get("body") or None,
            headers=headers,
            object_body=False,
        )
        return BackendCallResult(payload=data, latency_ms=latency_ms, upstream_status=status)

    async def _request(
        self,
        capability: Capability,
        method: str,
        url: str,
        *,
        timeout_s: float,
        privileged: bool,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        object_body: bool = True,
    ) -> tuple[Any, int, int]:
        """Send one request and return ``(body, status, latency_ms)``.

        With ``object_body`` the body must be a JSON object; otherwise any JSON
        value is accepted and an empty body comes back as ``None``.
        """
        request_headers = {"Accept": "application/json"}
        if headers:
            request_headers.update(headers)
        if privileged and self._internal_token:
            request_headers[self._internal_token_header] = self._internal_token

        started = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                resp = await client.request(
                    method,
                    url,
                    json=json_body,
                    params=params,
                    content=content,
                    headers=request_headers,
                )
        except httpx.TimeoutException as exc:
            self._log_failure(capability, reason="timeout", error=exc)
            raise BackendUnavailable(reason="timeout") from exc
        except httpx.HTTPError as exc:
            self._log_failure(capability, reason="connection_error", error=exc)
            raise BackendUnavailable(reason="connection_error") from exc
        latency_ms = int((perf_counter() - started) * 1000)

        if not 200 <= resp.status_code < 300:
            self._log_failure(capability, reason="upstream_status", upstream_status=resp.status_code)
            raise BackendUnavailable(upstream_status=resp.status_code, reason="upstream_status")

        if not object_body and not resp.content.strip():
            return None, resp.status_code, latency_ms
        try:
            data = resp.json()
        except ValueError as exc:
            self._log_failure(
                capability, reason="invalid_body", upstream_status=resp.status_code, error=exc
            )
            raise BackendUnavailable(
                upstream_status=resp.status_code, reason="invalid_body"
            ) from exc
        if object_body and not isinstance(data, dict):
            raise self._missing_field(capability, "object body", resp.status_code)
        return data, resp.status_code, latency_ms

    def _missing_field(
        self, capability: Capability, field_name: str, upstream_status: int
    ) -> BackendUnavailable:
        self._log_failure(
            capability,
            reason="missing_field",
            upstream_status=upstream_status,
            error=f"response missing {field_name}",
        )
        return BackendUnavailable(upstream_status=upstream_status, reason="missing_field")

    @staticmethod
    def _log_failure(
        capability: Capability,
        reason: str,
        upstream_status: int | None = None,
        error: object | None = None,
    ) -> None:
        logger.warning(
            "backend_call_failed",
            extra={
                "capability": capability.value,
                "upstream_status": upstream_status,
                "error": f"{reason}: {error}" if error is not None else reason,
            },
        )
