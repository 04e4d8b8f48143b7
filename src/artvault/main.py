"""
Main entry point for ArtVault application.

This module provides the main function for running the ArtVault server.
"""

import logging

import uvicorn

from .api import create_app
from .config import get_settings

logger = logging.getLogger(__name__)


def main():
    """Main application entry point."""
    try:
        settings = get_settings()

        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        app = create_app(settings)

        logger.info(
            f"Starting ArtVault server on {settings.server_host}:"
            f"{settings.server_port}"
        )
        uvicorn.run(
            app,
            host=settings.server_host,
            port=settings.server_port,
            log_level=settings.log_level.lower(),
        )

    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        raise


if __name__ == "__main__":
    main()
