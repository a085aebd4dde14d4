"""CLI entry point: ``python -m llmsession.server``."""

from __future__ import annotations

import argparse
import logging

import uvicorn

from llmsession.engine.config import EngineConfig
from llmsession.server.api import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="llmsession streaming server")
    parser.add_argument("--model", required=True, help="HuggingFace model ID or local path")
    parser.add_argument("--host", default="127.0.0.1", help="bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="bind port (default: 8000)")
    parser.add_argument(
        "--context-size",
        type=int,
        default=1024,
        help="context window in tokens; <= 0 selects the default (default: 1024)",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=4,
        help="intra-op threads; <= 0 selects the default (default: 4)",
    )
    parser.add_argument(
        "--no-mmap",
        action="store_true",
        default=False,
        help="read weights fully into memory instead of mapping them",
    )
    parser.add_argument("--device", default="cpu")
    parser.add_argument("--dtype", default="float32", choices=["float32", "bfloat16", "float16"])
    parser.add_argument(
        "--preload",
        action="store_true",
        default=False,
        help="load the model at startup instead of on the first request",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = EngineConfig(
        model_path=args.model,
        context_size=args.context_size,
        thread_count=args.threads,
        use_mmap=not args.no_mmap,
        device=args.device,
        dtype=args.dtype,
    )

    app = create_app(config, preload=args.preload)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
