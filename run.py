#!/usr/bin/env python3
"""
Microlend Entry Point

Starts the FastAPI server with the settlement service.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microlend.api import run_server
from microlend.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Microlend settlement service...")
    print("All money calculations use Decimal precision")
    print(f"Overdue sweep: {'enabled' if config.sweep_enabled else 'disabled'}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Microlend...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
