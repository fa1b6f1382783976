"""
Coldstart proxy entry point.

Usage:
    uvicorn coldstart.main:app --host 0.0.0.0 --port 8080

    Or run directly:
    python -m coldstart.main
"""

from coldstart.config import settings
from coldstart.proxy.api import create_app

app = create_app()

__all__ = ["app", "create_app"]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "coldstart.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug_mode
    )
