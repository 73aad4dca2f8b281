"""
main.py: server launcher and entry point.

Run this file to start the forecasting service:

    python main.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and the background loops.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


def main() -> None:
    """Start the crowd forecasting server."""
    print("=" * 60)
    print("  Crowd Occupancy Forecasting")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Single worker: the model store and both loops live in this process.
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        workers=1,
        log_level="info",
    )


if __name__ == "__main__":
    main()
