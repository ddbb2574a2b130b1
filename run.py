#!/usr/bin/env python3
"""
Nostro/Vostro Settlement Service Entry Point

Starts the FastAPI server with the configured store and FX table.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from correspondent_banking.api import run_server
from correspondent_banking.config import get_config
from correspondent_banking.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting settlement service on {config.api_host}:{config.api_port} "
                f"(store: {config.store_backend})")

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down settlement service")
    except Exception as e:
        logger.exception(f"Error starting server: {e}")
        sys.exit(1)
