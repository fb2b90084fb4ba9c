#!/usr/bin/env python3
"""
Server entrypoint: python -m streamvault.start_server
"""
import os
import sys

import uvicorn


def main() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    print(f"[StreamVault] Serving on http://{host}:{port}")
    try:
        uvicorn.run(
            "streamvault.main:app",
            host=host,
            port=port,
            reload=False,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n[StreamVault] Shutting down...")
        sys.exit(0)


if __name__ == "__main__":
    main()
