"""Entrypoint.

Usage:
  binsettle serve     # HTTP API + feed + resolution scheduler in one process
  binsettle worker    # feed + resolution scheduler only (sweep-driven)
  binsettle metrics   # print the last published metrics snapshot
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Optional

import uvicorn

from binsettle.api.server import create_app
from binsettle.api.state import set_state
from binsettle.app.service import SettlementService, run_worker
from binsettle.infrastructure.logging.logging import configure_logging, get_logger
from binsettle.infrastructure.utils.config import SettlementServiceConfig, load_config
from binsettle.services.monitoring.metrics_store import read_metrics


async def run_server(config: SettlementServiceConfig) -> None:
    log = get_logger("main")
    service = SettlementService(config)
    await service.start()
    set_state(service.app_state())

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(config.api.cors_origins),
            host=config.api.host,
            port=config.api.port,
            log_level=config.log_level.lower(),
        )
    )
    log.info("api_listening", host=config.api.host, port=config.api.port)
    try:
        await server.serve()
    finally:
        set_state(None)
        await service.stop()


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser("binsettle")
    parser.add_argument("command", choices=["serve", "worker", "metrics"], help="What to run")
    parser.add_argument("--config", type=Path, default=None, help="YAML config path")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(config.log_level, json_logs=config.json_logs)

    if args.command == "serve":
        asyncio.run(run_server(config))
        return

    if args.command == "worker":
        try:
            asyncio.run(run_worker(config))
        except KeyboardInterrupt:
            pass
        return

    if args.command == "metrics":
        print(json.dumps(read_metrics(Path(config.monitoring.metrics_path)), indent=2))
        return


if __name__ == "__main__":
    main()
