#!/usr/bin/env python3
"""
Serve the subscription engine API.

Usage:
    python -m backend.start_backend
    python -m backend.start_backend --port 9000 --reload
"""
import argparse
import sys
from typing import List, Optional

import uvicorn


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Subscription engine API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (dev only)")
    args = parser.parse_args(argv)

    print(f"[Backend] Serving on http://{args.host}:{args.port}")
    try:
        uvicorn.run(
            "backend.main:app",
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[Backend] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
