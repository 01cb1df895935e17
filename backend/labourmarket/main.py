"""ASGI entry point: ``uvicorn labourmarket.main:app``."""

from .server import create_app

app = create_app()
