"""Entry point for the EcoTrace API server.

Starts the FastAPI application with Uvicorn.  Host and port come from
the ``HOST`` and ``PORT`` environment variables (see
``ecotrace_api.app.core.config``); defaults are ``0.0.0.0`` and ``3001``.

Usage:
    python run.py
"""
import asyncio

from uvicorn import Config, Server

from ecotrace_api.app.core.config import settings
from ecotrace_api.app.main import app


async def main() -> None:
    """Serve the API until interrupted."""
    config = Config(
        app=app,
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
    server = Server(config)
    await server.serve()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
