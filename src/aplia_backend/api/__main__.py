"""
aplia_backend.api.__main__

Entrypoint for running the FastAPI application via `python -m aplia_backend.api`.
"""

from __future__ import annotations

import uvicorn

from aplia_backend.api.app import create_app
from aplia_backend.settings import get_settings


def main() -> None:
    settings = get_settings()
    app = create_app(settings=settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,  # structlog
    )


if __name__ == "__main__":
    main()
