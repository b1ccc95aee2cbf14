"""
TreasureX signal engine entry point.

Reads config/treasurex.yaml, starts the feed connectors, and runs pattern
detection, contract scanning and alert dispatch until stopped.

Environment variables:
    TREASUREX_CONFIG   Path to the YAML config (default: config/treasurex.yaml)
    AWS_REGION         AWS region for SSM / CloudWatch / DynamoDB (default: us-west-2)
    FEEDS              Comma-separated subset of feeds to run, e.g. "price,whale_transfer"
    CONTRACTS          Override the startup contract list
    SOLANA_RPC_URL     Solana RPC endpoint used by the scanner
    PIPELINE_VERSION   Recorded in alert lineage (default: dev)

Shutdown:
    SIGTERM / SIGINT  -> graceful shutdown: drains queue, flushes deferred alerts,
                         closes connections, saves subscriptions
"""

import asyncio
import logging
import signal
import sys

from treasurex.runtime.connector_manager import ConnectorManager

logger = logging.getLogger(__name__)


def main() -> None:
    """Start the engine and run until SIGTERM/SIGINT."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
    )
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    manager = ConnectorManager()

    def _handle_signal(sig: signal.Signals) -> None:
        logger.info("Received %s, initiating graceful shutdown", sig.name)
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle_signal, sig)

    try:
        logger.info("TreasureX signal engine starting")
        loop.run_until_complete(manager.run())
    except Exception as exc:
        logger.exception("Engine exited with error: %s", exc)
        sys.exit(1)
    finally:
        loop.close()
        logger.info("Engine stopped")


if __name__ == "__main__":
    main()
