ALLOW_METHODS = "GET, HEAD, POST, PUT, PATCH, DELETE, OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization, X-API-Key"


def cors_headers(method: str, allow_origin: str = "*") -> dict[str, str]:
    """Return the fixed CORS header set; a fresh dict on every call."""
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOW_METHODS,
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
    }
    if method.upper() == "OPTIONS":
        headers["Access-Control-Max-Age"] = "86400"
    return headers
