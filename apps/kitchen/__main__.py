"""
Convenience entrypoint to run the kitchen API with uvicorn.

Example:
  python -m apps.kitchen --reload
"""
import os
import sys

import uvicorn


def main() -> None:
    reload = "--reload" in sys.argv[1:] or os.getenv("KITCHEN_RELOAD", "false").lower() == "true"
    host = os.getenv("KITCHEN_HOST", "0.0.0.0")
    port = int(os.getenv("KITCHEN_PORT", "8000"))
    uvicorn.run(
        "apps.kitchen.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
