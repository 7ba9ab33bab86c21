"""
Envelope Signing Engine — Uvicorn Launcher
Starts the API with defaults taken from the application settings (.env).

Usage:
    python run.py
    python run.py --port 8080 --log-level debug
    python run.py --reload
"""
import argparse
import os

import uvicorn

from esign_engine.config import get_settings


def build_parser(settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{settings.APP_NAME} v{settings.APP_VERSION}")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument(
        "--reload", action=argparse.BooleanOptionalAction, default=settings.DEBUG,
        help="Hot reload (default: on when DEBUG is set)",
    )
    parser.add_argument("--workers", type=int, default=1, help="Number of workers (default: 1)")
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL.lower(),
        choices=["critical", "error", "warning", "info", "debug"],
        help="Uvicorn log level (default: LOG_LEVEL)",
    )
    return parser


def main():
    settings = get_settings()
    args = build_parser(settings).parse_args()

    # Captures are read from here by the document analyzer
    os.makedirs(settings.CAPTURE_STORAGE_DIR, exist_ok=True)

    print(f"""
    ========================================================
      {settings.APP_NAME} v{settings.APP_VERSION}
      API:      http://{args.host}:{args.port}/api
      Docs:     http://localhost:{args.port}/docs
      Verify:   {settings.PUBLIC_BASE_URL}/api/signing/verify/<ref>
      Captures: {settings.CAPTURE_STORAGE_DIR}
    ========================================================
    """)

    uvicorn.run(
        "esign_engine.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1 if args.reload else args.workers,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
