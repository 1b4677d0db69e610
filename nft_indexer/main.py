import asyncio, os, signal, logging

import uvloop

from .chain import HttpMetadataFetcher, Web3Chain
from .config import IndexerConfig
from .db import open_storage
from .indexer import NFTIndexer
from .log import setup_logging

logger = logging.getLogger(__name__)


async def main():
    rpc_url = os.getenv("RPC_URL")
    contract = os.getenv("CONTRACT_ADDRESS")
    if not rpc_url:
        raise SystemExit("Missing RPC_URL in .env")
    if not contract:
        raise SystemExit("Missing CONTRACT_ADDRESS in .env")

    cfg = IndexerConfig.from_env()
    chain = Web3Chain.from_url(rpc_url, contract)
    head = await chain.block_number()
    logger.info("Connected, head=%d, contract=%s", head, chain.address)

    fetcher = HttpMetadataFetcher()
    indexer = NFTIndexer(chain.address, chain, open_storage(cfg, chain.address), cfg, fetcher)
    indexer.on("transfer", lambda t: logger.info(
        "Transfer: token %s from %s to %s", t.token_id, t.from_addr, t.to))
    indexer.on("error", lambda e: logger.warning("indexer error: %s", e))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await indexer.init()
        await stop.wait()
        logger.info("Gracefully shutting down...")
    finally:
        await indexer.close()
        await fetcher.close()


def run():
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    uvloop.run(main())


if __name__ == "__main__":
    run()
