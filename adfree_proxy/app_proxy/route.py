from fastapi import APIRouter, Depends, Request, WebSocket

from adfree_proxy.app_proxy.dispatcher import ProxyDispatcher

router = APIRouter()

PROXIED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"]


def get_dispatcher(request: Request) -> ProxyDispatcher:
    return request.app.state.dispatcher


async def websocket_proxy(websocket: WebSocket):
    """Relay a WebSocket upgrade to the upstream's WebSocket endpoint."""
    dispatcher: ProxyDispatcher = websocket.app.state.dispatcher
    await dispatcher.relay_websocket(websocket)


# Registered last by the app factory so diagnostic routes take precedence
@router.api_route("/{path:path}", methods=PROXIED_METHODS)
async def proxy_all(
    request: Request, path: str, dispatcher: ProxyDispatcher = Depends(get_dispatcher)
):
    """Catch-all route that proxies all requests to the upstream."""
    return await dispatcher.dispatch(request)
