#!/usr/bin/env python3
"""
Staff Loans Entry Point

Starts the FastAPI server with the staff loan lifecycle engine. Host, port and
storage come from STAFF_LOANS_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from staff_loans.api import run_server
from staff_loans.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Staff Loans service...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)  # Set to True for development
    except KeyboardInterrupt:
        print("\nShutting down Staff Loans service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
