"""
API entry point

Run with:
    python -m fintrack
"""

import logging
import os

import uvicorn

from fintrack.log_config import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting fintrack API on %s:%s", host, port)
    uvicorn.run("fintrack.main:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
