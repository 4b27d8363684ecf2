#!/usr/bin/env python3
"""
Run script for the claims engine HTTP server.

Usage:
    python run_server.py

Settings come from CLAIMS_* environment variables or a .env file
(e.g. CLAIMS_DATABASE_PATH, CLAIMS_PORT, CLAIMS_DEBUG).
"""

import logging
import os
import sys

# Quiet noisy third-party loggers before anything imports them
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("python_multipart").setLevel(logging.WARNING)

# Add project root to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def main():
    """Run the claims engine server."""
    import uvicorn
    from src.api import create_app
    from src.engine import build_engine
    from src.utils.config import get_settings

    settings = get_settings()

    print("=" * 60)
    print("Expense Claims Engine")
    print("=" * 60)
    print(f"Server: http://{settings.host}:{settings.port}")
    print(f"Database: {settings.database_path}")
    print(f"Receipts: {settings.attachments_dir}")
    print(f"High-risk threshold: {settings.high_risk_threshold}")
    print("=" * 60)
    print()
    print("Endpoints:")
    print(f"  - Health: http://{settings.host}:{settings.port}/health")
    print(f"  - Claims: http://{settings.host}:{settings.port}/claims")
    print(f"  - Approval queue: http://{settings.host}:{settings.port}/approvals/queue")
    print(f"  - Analytics: http://{settings.host}:{settings.port}/analytics/departments")
    print()

    app = create_app(build_engine(settings))
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
