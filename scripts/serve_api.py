from __future__ import annotations

import argparse
import sys
from pathlib import Path

import uvicorn

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT))

from src.read_api.app import create_app
from src.utils.config import load_app_config
from src.utils.logging import get_logger, setup_logging


def main() -> int:
    ap = argparse.ArgumentParser(description="Serve the country metadata API")
    ap.add_argument("--config", default=None, help="YAML config path (default: config/app.yaml)")
    ap.add_argument("--host", default="0.0.0.0")
    ap.add_argument("--port", type=int, default=None, help="Override PORT from config")
    args = ap.parse_args()

    setup_logging()
    cfg = load_app_config(args.config)
    port = args.port if args.port is not None else cfg.port

    logger = get_logger(component="serve_api")
    logger.info(
        "serve_api_starting",
        url=f"http://{args.host}:{port}/{cfg.api_prefix}",
        docs=f"http://{args.host}:{port}/{cfg.swagger_path}",
    )

    uvicorn.run(create_app(cfg), host=args.host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
