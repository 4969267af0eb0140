"""Run the ipcam server with uvicorn."""
from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from .app import create_app
from .config import DEFAULT_CONFIG_PATH, load_config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="ipcam", description="IP camera viewer and recorder")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.environ.get("IPCAM_CONFIG", DEFAULT_CONFIG_PATH)),
        help="Path to the JSON configuration file",
    )
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=None, help="Override the configured port")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config(args.config)
    app = create_app(args.config, config=config)
    uvicorn.run(app, host=args.host, port=args.port or config.port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
