#!/usr/bin/env python3
"""
Run the dkv HTTP server with uvicorn.
"""

import argparse
import sys
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn

from dkv.core.config import load_settings, validate_config


def main():
    parser = argparse.ArgumentParser(description="Run the dkv HTTP server")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    args = parser.parse_args()

    issues = validate_config(load_settings())
    if issues:
        for issue in issues:
            print(f"❌ {issue}")
        sys.exit(1)

    print(f"🚀 Starting dkv on http://{args.host}:{args.port}")
    uvicorn.run(
        "dkv.api.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
