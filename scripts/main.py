#!/usr/bin/env python3
# === MODULE PURPOSE ===
# Main entry point for the position ledger service.
# Builds the store, service and optional exchange sync, then serves the API.

# === USAGE ===
# uv run python scripts/main.py
# uv run python scripts/main.py --config config/ledger-config.yaml --port 8080
# uv run python scripts/main.py --memory   # no PostgreSQL, data lost on exit

# === KEY CONCEPTS ===
# - Store backend from config (database.ledger), overridable with --memory
# - Exchange sync configured from SYNC_* environment variables
# - uvicorn runs inside our event loop so clients are closed on the same loop

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.common.config import Config, get_sync_config, get_web_config, load_config
from src.ledger import (
    MemoryPositionStore,
    PositionService,
    PositionStore,
    PostgresPositionStore,
    create_position_store_from_config,
)
from src.sync import ExchangeFeedClient, ReconciliationEngine
from src.web import create_app

logger = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    """Configure logging based on config."""
    level = config.get_str("logging.level", "INFO")
    format_str = config.get_str(
        "logging.format",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Create logs directory if needed
    log_file = config.get_str("logging.file")
    if log_file:
        log_path = project_root / log_file
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, level.upper()),
            format=format_str,
            handlers=[
                logging.StreamHandler(),
                logging.FileHandler(log_path, encoding="utf-8"),
            ],
        )
    else:
        logging.basicConfig(
            level=getattr(logging, level.upper()),
            format=format_str,
        )


async def main(config_path: str, host: str, port: int, use_memory: bool) -> None:
    """Main entry point."""
    config = load_config(config_path)
    setup_logging(config)

    logger.info("=" * 60)
    logger.info("Position Ledger")
    logger.info("=" * 60)

    store: PositionStore
    if use_memory:
        logger.warning("Using in-memory position store; data is lost on exit")
        store = MemoryPositionStore()
    else:
        store = create_position_store_from_config(config_path)
    if isinstance(store, PostgresPositionStore):
        await store.connect()

    service = PositionService(store)

    sync_config = get_sync_config()
    feed: ExchangeFeedClient | None = None
    engine: ReconciliationEngine | None = None
    if sync_config["enabled"]:
        feed = ExchangeFeedClient(
            base_url=sync_config["feed_url"],
            exchange=sync_config["exchange"],
            api_key=sync_config["api_key"] or None,
            timeout=sync_config["timeout"],
        )
        await feed.start()
        engine = ReconciliationEngine(
            feed,
            store,
            user_id=sync_config["user_id"],
            poll_interval=sync_config["poll_interval"],
        )
        logger.info(
            f"{sync_config['exchange']} sync enabled for user {sync_config['user_id']} "
            f"(every {sync_config['poll_interval']}s)"
        )
    else:
        logger.info("Exchange sync disabled")

    app = create_app(service, sync_engine=engine, auto_start_sync=sync_config["auto_start"])
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))

    try:
        await server.serve()
    finally:
        if engine:
            await engine.stop()
        if feed:
            await feed.stop()
        await store.close()
        logger.info("Shutdown complete")


if __name__ == "__main__":
    web_config = get_web_config()

    parser = argparse.ArgumentParser(description="Position Ledger API")
    parser.add_argument(
        "--config",
        "-c",
        default="config/ledger-config.yaml",
        help="Path to ledger configuration file",
    )
    parser.add_argument("--host", default=web_config["host"], help="Bind host")
    parser.add_argument("--port", type=int, default=web_config["port"], help="Bind port")
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Use the in-memory store instead of PostgreSQL",
    )
    args = parser.parse_args()

    asyncio.run(main(args.config, args.host, args.port, args.memory))
