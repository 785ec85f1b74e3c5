"""Main entry point - serves the swap API.

The app lifespan starts and stops the timeout supervisor. uvicorn installs the
SIGINT/SIGTERM handlers and drains the lifespan on shutdown.
"""

import logging

import uvicorn

from atomicswap.api.app import create_app
from atomicswap.config import get_settings

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info(f"Starting atomic swap service ({settings.environment})")
    if settings.dry_run:
        logger.warning("DRY_RUN enabled - ledgers are simulated")
    if settings.is_production and not settings.participant_tokens:
        logger.warning("PARTICIPANT_TOKENS not set - participant requests will be rejected")

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
