from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gateway.api.routes import router
from gateway.audit.writer import AuditRecorder, create_audit_sink
from gateway.auth.issuance import CredentialIssuer
from gateway.auth.resolver import CredentialResolver
from gateway.auth.store import create_credential_store
from gateway.backends.proxy import BackendProxy
from gateway.config.settings import Settings, get_settings
from gateway.core.cors import cors_headers
from gateway.core.errors import InternalFault, error_response
from gateway.core.logging import configure_logging
from gateway.middleware.request_id import RequestIDMiddleware, request_id_from_request
from gateway.ratelimit.counters import CounterStore, InMemoryCounterStore, RedisCounterStore
from gateway.ratelimit.limiter import FixedWindowRateLimiter
from gateway.routing.router import Router, default_routes
from gateway.services.gateway import GatewayOrchestrator


def _build_counter_store(settings: Settings) -> CounterStore:
    backend = settings.counter_backend_normalized
    if backend == "memory":
        return InMemoryCounterStore()
    if backend == "redis":
        return RedisCounterStore(redis_url=settings.counter_redis_url)
    raise RuntimeError(f"Unsupported GATEWAY_COUNTER_BACKEND value: {backend}")


def _build_orchestrator(
    settings: Settings,
    counter_store: CounterStore | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
) -> GatewayOrchestrator:
    try:
        credential_store = create_credential_store(
            backend=settings.identity_backend_normalized,
            path=settings.identity_db_path,
        )
        audit_sink = create_audit_sink(
            backend=settings.audit_backend_normalized,
            jsonl_path=settings.audit_log_path,
            sqlite_path=settings.audit_db_path,
        )
    except ValueError as exc:
        raise RuntimeError(str(exc)) from exc

    limiter = FixedWindowRateLimiter(
        store=counter_store if counter_store is not None else _build_counter_store(settings),
        limit=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
        key_prefix=settings.counter_key_prefix,
    )
    return GatewayOrchestrator(
        settings=settings,
        router=Router(default_routes(metrics_enabled=settings.metrics_enabled)),
        resolver=CredentialResolver(credential_store),
        limiter=limiter,
        proxy=BackendProxy.from_settings(settings, transport=backend_transport),
        audit_recorder=AuditRecorder(audit_sink),
        issuer=CredentialIssuer(
            credential_store,
            rate_limit=settings.rate_limit_max_requests,
            session_ttl_seconds=settings.session_ttl_seconds,
            key_prefix=settings.api_key_prefix,
        ),
    )


def create_app(
    counter_store: CounterStore | None = None,
    backend_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    store = counter_store if counter_store is not None else _build_counter_store(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        if isinstance(store, RedisCounterStore):
            await store.close()

    app = FastAPI(
        title="LLM Edge Gateway",
        lifespan=lifespan,
        version=settings.version,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.add_middleware(RequestIDMiddleware)

    orchestrator = _build_orchestrator(
        settings, counter_store=store, backend_transport=backend_transport
    )
    app.state.orchestrator = orchestrator
    app.state.settings = settings

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, _: Exception) -> JSONResponse:
        return error_response(
            InternalFault(),
            request_id_from_request(request),
            cors_headers(request.method, settings.cors_allow_origin),
        )

    app.include_router(router)
    return app
