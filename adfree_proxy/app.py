"""ASGI entry point: ``uvicorn adfree_proxy.app:app``."""

from adfree_proxy.server import create_app

app = create_app()
