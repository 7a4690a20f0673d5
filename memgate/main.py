"""
Entry point for the memgate gateway.

SETUP REQUIRED:
1. Copy .env.example to .env and fill in at least one provider API key
2. Optionally copy config.yaml.example to config.yaml and adjust settings
3. For durable memory, set POSTGRES_URL to a database with pgvector available
4. Install dependencies:
   pip install -e .
"""

import logging
import sys

import uvicorn

from .config import config
from .server import create_app

logger = logging.getLogger("memgate.main")


def main():
    """Entry point for the application."""
    config.setup_logging()

    logger.info("=" * 60)
    logger.info("memgate - LLM gateway with long-term memory")
    logger.info("=" * 60)

    # Validate configuration
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    try:
        uvicorn.run(
            create_app(),
            host=config.proxy.host,
            port=config.proxy.port,
            log_config=None,
        )
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(130)


if __name__ == "__main__":
    main()
