"""Static route table for the gateway.

Routes are compiled once at startup and never mutated.  Matching is
first-match-wins over the ordered table: exact routes compare the whole
path, prefix routes use ``str.startswith``.  Because overlapping entries
are rejected at construction time, the order never changes the outcome.

A route's ``public`` flag is the only place that decides whether a request
skips authentication and rate limiting.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from gateway.core.errors import RouteConfigError, RouteNotFound

ALL_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"})


class Capability(Enum):
    HEALTH = "health"
    METRICS = "metrics"
    KEY_CREATE = "key_create"
    REGISTER = "register"
    LOGIN = "login"
    CHAT = "chat"
    MODELS = "models"
    EMBEDDINGS = "embeddings"
    SEARCH = "search"
    DOCUMENTS = "documents"
    AGENTS = "agents"


@dataclass(frozen=True)
class RouteDescriptor:
    path: str
    methods: frozenset[str]
    capability: Capability
    match: Literal["exact", "prefix"] = "prefix"
    public: bool = False

    def matches_path(self, path: str) -> bool:
        if self.match == "exact":
            return path == self.path
        return path.startswith(self.path)


def _route(
    path: str,
    methods: Iterable[str],
    capability: Capability,
    match: Literal["exact", "prefix"] = "prefix",
    public: bool = False,
) -> RouteDescriptor:
    return RouteDescriptor(
        path=path,
        methods=frozenset(method.upper() for method in methods),
        capability=capability,
        match=match,
        public=public,
    )


def default_routes(metrics_enabled: bool = True) -> list[RouteDescriptor]:
    routes = [
        _route("/", {"GET", "HEAD"}, Capability.HEALTH, match="exact", public=True),
        _route("/health", {"GET", "HEAD"}, Capability.HEALTH, match="exact", public=True),
        _route("/api/keys/create", {"POST"}, Capability.KEY_CREATE, match="exact", public=True),
        _route("/auth/register", {"POST"}, Capability.REGISTER, match="exact", public=True),
        _route("/auth/login", {"POST"}, Capability.LOGIN, match="exact", public=True),
        _route("/api/chat", {"POST"}, Capability.CHAT),
        _route("/api/search", {"GET", "POST"}, Capability.SEARCH),
        _route("/api/documents", ALL_METHODS, Capability.DOCUMENTS),
        _route("/api/agents", ALL_METHODS, Capability.AGENTS),
        _route("/api/embeddings", {"POST"}, Capability.EMBEDDINGS),
        _route("/api/models", {"GET"}, Capability.MODELS),
    ]
    if metrics_enabled:
        routes.append(
            _route("/metrics", {"GET"}, Capability.METRICS, match="exact", public=True)
        )
    return routes


def validate_routes(routes: list[RouteDescriptor]) -> None:
    """Raise ``RouteConfigError`` if any two routes could match the same path."""
    exact_paths: set[str] = set()
    prefixes = [route.path for route in routes if route.match == "prefix"]

    for route in routes:
        if not route.path.startswith("/"):
            raise RouteConfigError(f"Route path must start with '/': {route.path!r}")
        if not route.methods:
            raise RouteConfigError(f"Route {route.path!r} has an empty method set")
        if route.match == "exact":
            if route.path in exact_paths:
                raise RouteConfigError(f"Duplicate exact route: {route.path}")
            exact_paths.add(route.path)

    for index, prefix in enumerate(prefixes):
        for other in prefixes[index + 1 :]:
            if prefix.startswith(other) or other.startswith(prefix):
                raise RouteConfigError(f"Overlapping prefix routes: {prefix} and {other}")

    for path in exact_paths:
        for prefix in prefixes:
            if path.startswith(prefix):
                raise RouteConfigError(f"Exact route {path} is shadowed by prefix {prefix}")


class Router:
    def __init__(self, routes: list[RouteDescriptor]):
        validate_routes(routes)
        self._routes = tuple(routes)

    @property
    def routes(self) -> tuple[RouteDescriptor, ...]:
        return self._routes

    def match(self, method: str, path: str) -> RouteDescriptor:
        normalized_method = method.upper()
        for route in self._routes:
            if route.matches_path(path):
                if normalized_method in route.methods:
                    return route
                # No overlaps are allowed, so no later route can match this path.
                break
        raise RouteNotFound()

    def endpoints(self) -> list[str]:
        return [route.path if route.match == "exact" else f"{route.path}*" for route in self._routes]
