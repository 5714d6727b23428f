"""
Support Panel - Web Server Entry Point
======================================

Run this to start the API and restore saved WhatsApp sessions:
    python main.py

Then open http://127.0.0.1:8000/docs in your browser.
"""

import logging

import uvicorn

from support_panel.infrastructure.config import get_settings


def main():
    """Start the web server."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.web.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("\n" + "=" * 50)
    print("   Support Panel - WhatsApp Sessions")
    print("=" * 50)
    print(f"\n   Starting server at http://{settings.web.host}:{settings.web.port}")
    print("   Press Ctrl+C to stop\n")

    uvicorn.run(
        "support_panel.web.app:app",
        host=settings.web.host,
        port=settings.web.port,
        log_level=settings.web.log_level,
    )


if __name__ == "__main__":
    main()
