from __future__ import annotations

import argparse

import uvicorn

from signflow.core.config import get_settings


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Serve the SignFlow API")
    parser.add_argument("--host", default=settings.api_host)
    parser.add_argument("--port", type=int, default=settings.api_port)
    parser.add_argument("--workers", type=int, default=1)
    return parser


def main(argv: list[str] | None = None) -> None:
    # Import string so uvicorn can spawn workers; logging is configured by create_app.
    args = _build_parser().parse_args(argv)
    uvicorn.run(
        "signflow.apps.api.main:app",
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_config=None,
    )


if __name__ == "__main__":
    main()
