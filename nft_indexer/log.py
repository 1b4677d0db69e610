import logging
from logging.handlers import RotatingFileHandler

FORMAT    = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_BYTES = 5 * 1024 * 1024
BACKUPS   = 5

logger = logging.getLogger("nft_indexer")


def setup_logging(level: str = "INFO", log_dir: str = ".") -> None:
    """Console + rotating files (everything, and errors only). Entry points only."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    fmt = logging.Formatter(FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(fmt)

    everything = RotatingFileHandler(f"{log_dir}/indexer.log", maxBytes=MAX_BYTES, backupCount=BACKUPS)
    everything.setFormatter(fmt)

    errors = RotatingFileHandler(f"{log_dir}/indexer-error.log", maxBytes=MAX_BYTES, backupCount=BACKUPS)
    errors.setLevel(logging.ERROR)
    errors.setFormatter(fmt)

    for h in (console, everything, errors):
        root.addHandler(h)


def sync_percent(current: int, target: int) -> float:
    if target <= 0:
        return 100.0
    return round(current / target * 100, 2)


def log_sync_progress(current: int, target: int) -> None:
    logger.info("Sync Progress: %.2f%% (Block %d/%d)", sync_percent(current, target), current, target)


def log_rpc_call(method: str, duration_ms: int) -> None:
    logger.debug("RPC Call - Method: %s, Duration: %dms", method, duration_ms)
