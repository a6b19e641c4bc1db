#!/usr/bin/env python3
"""
Bank Account Ledger Entry Point

Starts the FastAPI server using host and port from configuration.
"""

import sys

from bank_ledger.api import run_server
from bank_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Bank Account Ledger...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Bank Account Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
