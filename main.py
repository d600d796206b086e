"""ASGI entry point: ``uvicorn main:app``.

Set ARC_USE_DOCKER=true to manage real containers; otherwise the controller
runs against an in-process simulated cluster.
"""

import logging
import os

from arc.api import create_app

logging.basicConfig(
    level=os.getenv("ARC_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
