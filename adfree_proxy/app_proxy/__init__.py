from .dispatcher import ProxyDispatcher
from .route import router, websocket_proxy

__all__ = ["ProxyDispatcher", "router", "websocket_proxy"]
