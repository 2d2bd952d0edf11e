#!/usr/bin/env python
"""
Settlement API Server Runner.

Usage:
    python -m settlement_engine.api.server

Or with PM2:
    pm2 start "python -m settlement_engine.api.server"

Ledger polling:
    Set LEDGER_STATUS_CLIENT="package.module:factory" to run the
    confirmation poller inside the API process. Without it, ledger
    status must be pushed to POST /ledger/confirmations.
"""

import logging
import os
import sys

import uvicorn

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)


def main():
    """Run the settlement API server."""
    host = os.getenv("SETTLEMENT_API_HOST", "0.0.0.0")
    port = int(os.getenv("SETTLEMENT_API_PORT", os.getenv("PORT", "8000")))
    reload = os.getenv("ENVIRONMENT", "production") == "development"

    logger.info(f"Starting Settlement API on {host}:{port}")

    try:
        uvicorn.run(
            "settlement_engine.api.app:create_app",
            factory=True,
            host=host,
            port=port,
            reload=reload,
            log_level="info",
            access_log=True,
        )
    except Exception as e:
        logger.error(f"Failed to start settlement API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
