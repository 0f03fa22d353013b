#!/usr/bin/env python3
"""
Personal Banking Service Entry Point

Starts the FastAPI server with host, port and database taken from the
BANKING_* environment settings.
"""

import sys

from personal_banking.api import run_server
from personal_banking.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Personal Banking Service...")
    print(f"Database: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        print("\nShutting down Personal Banking Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
