"""
Similar products service entry point.
Serves the similar products lookup over HTTP.
"""

import sys

import uvicorn
from loguru import logger

from similar_products.api import create_app
from similar_products.settings import global_settings


def main() -> None:
    """Configure logging and run the HTTP server."""
    logger.remove()
    logger.add(sys.stderr, level=global_settings.log_level.upper())

    logger.info(
        f"Starting similar products service on "
        f"{global_settings.server_host}:{global_settings.server_port} "
        f"(upstream {global_settings.product_service_base_url})"
    )

    try:
        uvicorn.run(
            create_app(),
            host=global_settings.server_host,
            port=global_settings.server_port,
            log_level=global_settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        logger.info("Similar products service stopped")


if __name__ == "__main__":
    main()
