import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, TypeVar

from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.background import BackgroundTask
from starlette.responses import Response

from gateway.audit.writer import AuditRecord, AuditRecorder
from gateway.auth.issuance import CredentialIssuer
from gateway.auth.resolver import CredentialResolver
from gateway.backends.base import BackendCallResult
from gateway.backends.proxy import BackendProxy
from gateway.config.settings import Settings
from gateway.core.cors import cors_headers
from gateway.core.errors import (
    GatewayError,
    InternalFault,
    RateLimitExceeded,
    RouteNotFound,
    ValidationFailure,
    error_response,
)
from gateway.metrics import record_request, render_metrics
from gateway.models.requests import (
    ChatRequest,
    EmailRequest,
    EmbeddingsRequest,
    KeyCreateRequest,
    SearchRequest,
)
from gateway.ratelimit.limiter import FixedWindowRateLimiter
from gateway.routing.router import Capability, RouteDescriptor, Router

logger = logging.getLogger("gateway.requests")

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class GatewayRequest:
    method: str
    path: str
    headers: Mapping[str, str]
    request_id: str
    query: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    peer_ip: str | None = None


@dataclass
class _Outcome:
    status_code: int
    content: Any
    action: str
    detail: dict[str, Any] = field(default_factory=dict)
    backend: BackendCallResult | None = None
    media_type: str = "application/json"


class GatewayOrchestrator:
    """Run one request through auth, rate limiting, routing, backend and audit.

    Stages run in that fixed order and the first failing stage ends the
    request.  Whatever the outcome, the response carries the same CORS
    headers and exactly one audit record is scheduled to run after the
    response has been sent.
    """

    def __init__(
        self,
        settings: Settings,
        router: Router,
        resolver: CredentialResolver,
        limiter: FixedWindowRateLimiter,
        proxy: BackendProxy,
        audit_recorder: AuditRecorder,
        issuer: CredentialIssuer,
    ):
        self._settings = settings
        self._router = router
        self._resolver = resolver
        self._limiter = limiter
        self._proxy = proxy
        self._audit_recorder = audit_recorder
        self._issuer = issuer

    async def handle(self, request: GatewayRequest) -> Response:
        headers = cors_headers(request.method, self._settings.cors_allow_origin)
        if request.method.upper() == "OPTIONS":
            return Response(status_code=200, headers=headers)

        started = perf_counter()
        identity: str | None = None
        capability = "unmatched"
        outcome: _Outcome | None = None

        try:
            route = self._match(request)
            if route is not None:
                capability = route.capability.value

            if route is None or not route.public:
                identity = (await self._resolver.resolve(request.headers)).identity_id
                decision = await self._limiter.admit(identity)
                headers.update(decision.headers())
                if not decision.allowed:
                    raise RateLimitExceeded(decision.limit, decision.reset_at_seconds)

            if route is None:
                raise RouteNotFound()

            outcome = await self._dispatch(route, request)
            response = self._success_response(outcome, headers, request.request_id)
            status_code = outcome.status_code
            action = outcome.action
            detail = {"method": request.method, "status": status_code, **outcome.detail}
        except GatewayError as exc:
            response = error_response(exc, request.request_id, headers)
            status_code = exc.status_code
            action = exc.audit_action
            detail = {"method": request.method, "status": status_code, "error": exc.code}
        except Exception as exc:
            logger.exception(
                "gateway_internal_error",
                extra={
                    "request_id": request.request_id,
                    "identity": identity,
                    "capability": capability,
                    "error": f"{type(exc).__name__}: {exc}",
                },
            )
            fault = InternalFault()
            response = error_response(fault, request.request_id, headers)
            status_code = fault.status_code
            action = fault.audit_action
            detail = {"method": request.method, "status": status_code, "error": fault.code}

        latency_s = perf_counter() - started
        response.background = BackgroundTask(
            self._audit_recorder.record,
            AuditRecord(
                identity=identity,
                action=action,
                resource=request.path,
                client_ip=self._client_ip(request),
                user_agent=request.headers.get("user-agent") or "unknown",
                detail=detail,
            ),
        )
        self._record_metrics(capability, status_code, latency_s, outcome)
        logger.info(
            "request_completed",
            extra={
                "request_id": request.request_id,
                "identity": identity,
                "capability": capability,
                "action": action,
                "method": request.method,
                "path": request.path,
                "status_code": status_code,
                "latency_ms": int(latency_s * 1000),
            },
        )
        return response

    def _match(self, request: GatewayRequest) -> RouteDescriptor | None:
        try:
            return self._router.match(request.method, request.path)
        except RouteNotFound:
            return None

    async def _dispatch(self, route: RouteDescriptor, request: GatewayRequest) -> _Outcome:
        capability = route.capability

        if capability is Capability.HEALTH:
            return _Outcome(
                status_code=200,
                content={
                    "status": "ok",
                    "service": self._settings.service_name,
                    "version": self._settings.version,
                    "endpoints": self._router.endpoints(),
                },
                action="HEALTH_CHECK",
            )
        if capability is Capability.METRICS:
            return _Outcome(
                status_code=200,
                content=render_metrics(),
                action="METRICS_SCRAPE",
                media_type="text/plain; charset=utf-8",
            )
        if capability is Capability.KEY_CREATE:
            key_request = self._parse_body(request, KeyCreateRequest, "Invalid key request")
            issued = await self._issuer.create_key(key_request.name)
            return _Outcome(status_code=200, content=issued, action="KEY_CREATED")
        if capability is Capability.REGISTER:
            email_request = self._parse_body(request, EmailRequest, "Email required")
            registered = await self._issuer.register(email_request.email)
            return _Outcome(status_code=201, content=registered, action="USER_REGISTERED")
        if capability is Capability.LOGIN:
            email_request = self._parse_body(request, EmailRequest, "Email required")
            session = await self._issuer.login(email_request.email)
            return _Outcome(status_code=200, content=session, action="SESSION_CREATED")

        payload = self._backend_payload(route, request)
        result = await self._proxy.call(capability, payload)
        passthrough = capability in (Capability.DOCUMENTS, Capability.AGENTS)
        return _Outcome(
            status_code=result.upstream_status if passthrough else 200,
            content=result.payload,
            action="API_CALL",
            detail={"latency_ms": result.latency_ms},
            backend=result,
        )

    def _backend_payload(self, route: RouteDescriptor, request: GatewayRequest) -> dict[str, Any]:
        capability = route.capability
        if capability is Capability.CHAT:
            chat = self._parse_body(request, ChatRequest, "Message required")
            return {"prompt": chat.text, "model": chat.model, "options": chat.options}
        if capability is Capability.EMBEDDINGS:
            embeddings = self._parse_body(request, EmbeddingsRequest, "Text required")
            return {"text": embeddings.content, "model": embeddings.model}
        if capability is Capability.SEARCH:
            if request.method.upper() == "GET":
                search = self._validate(
                    SearchRequest,
                    {"query": request.query.get("q", ""), "count": request.query.get("count")},
                    "Query required",
                )
            else:
                search = self._parse_body(request, SearchRequest, "Query required")
            return {"query": search.query, "count": search.count}
        if capability is Capability.MODELS:
            return {}
        return {
            "method": request.method,
            "path": request.path[len(route.path) :],
            "query": dict(request.query),
            "body": request.body,
            "content_type": request.headers.get("content-type"),
        }

    def _parse_body(
        self, request: GatewayRequest, model: type[ModelT], message: str
    ) -> ModelT:
        if not request.body.strip():
            data: object = {}
        else:
            try:
                data = json.loads(request.body)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise ValidationFailure("Invalid JSON body") from exc
        if not isinstance(data, dict):
            raise ValidationFailure("Request body must be a JSON object")
        return self._validate(model, data, message)

    @staticmethod
    def _validate(
        model: type[ModelT], data: dict[str, Any], message: str
    ) -> ModelT:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationFailure(message) from exc

    @staticmethod
    def _success_response(outcome: _Outcome, headers: dict[str, str], request_id: str) -> Response:
        response: Response
        if outcome.content is None:
            response = Response(status_code=outcome.status_code)
        elif outcome.media_type.startswith("text/plain"):
            response = PlainTextResponse(
                content=outcome.content, status_code=outcome.status_code
            )
        else:
            response = JSONResponse(content=outcome.content, status_code=outcome.status_code)
        response.headers.update(headers)
        response.headers["x-request-id"] = request_id
        return response

    def _client_ip(self, request: GatewayRequest) -> str:
        forwarded = request.headers.get(self._settings.client_ip_header)
        if forwarded:
            return forwarded.strip()
        return request.peer_ip or "unknown"

    @staticmethod
    def _record_metrics(
        capability: str, status_code: int, latency_s: float, outcome: _Outcome | None
    ) -> None:
        backend = outcome.backend if outcome else None
        usage = backend.token_usage if backend else None
        record_request(
            capability=capability,
            status_code=status_code,
            latency_s=latency_s,
            backend_latency_s=backend.latency_ms / 1000 if backend else None,
            tokens_in=usage.prompt if usage else 0,
            tokens_out=usage.completion if usage else 0,
        )
