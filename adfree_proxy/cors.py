from fastapi import Request
from fastapi.responses import Response

DEFAULT_ALLOW_METHODS = "GET, POST, PUT, DELETE, PATCH, HEAD, OPTIONS"


def cors_headers(request: Request) -> dict[str, str]:
    return {
        "access-control-allow-origin": request.headers.get("origin") or "*",
        "access-control-allow-credentials": "true",
    }


async def cors_middleware(request: Request, call_next):
    """
    Attach CORS headers to every response.

    OPTIONS preflights are answered here with an empty 200 and never reach
    the proxy pipeline.
    """
    if request.method == "OPTIONS":
        response = Response(status_code=200)
        response.headers["access-control-allow-methods"] = DEFAULT_ALLOW_METHODS
        requested_headers = request.headers.get("access-control-request-headers")
        if requested_headers:
            response.headers["access-control-allow-headers"] = requested_headers
    else:
        response = await call_next(request)

    for name, value in cors_headers(request).items():
        response.headers[name] = value
    if request.headers.get("origin"):
        vary = response.headers.get("vary")
        if not vary:
            response.headers["vary"] = "Origin"
        elif "origin" not in vary.lower():
            response.headers["vary"] = f"{vary}, Origin"
    return response
