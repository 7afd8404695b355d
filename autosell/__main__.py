"""Run the service: ``python -m autosell``."""
from __future__ import annotations

import os

import uvicorn

from common.logging import configure_logging

from .api import create_app
from .config import Settings


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_format, service_name="autosell")
    app = create_app(settings)
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=settings.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    main()
