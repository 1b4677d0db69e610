import logging

from nft_indexer.log import log_rpc_call, log_sync_progress, setup_logging, sync_percent


def test_sync_percent():
    assert sync_percent(50, 200) == 25.0
    assert sync_percent(1, 3) == 33.33
    assert sync_percent(0, 0) == 100.0


def test_progress_line(caplog):
    with caplog.at_level(logging.INFO, logger="nft_indexer"):
        log_sync_progress(119, 125)
    assert "Sync Progress: 95.20% (Block 119/125)" in caplog.text


def test_rpc_call_line(caplog):
    with caplog.at_level(logging.DEBUG, logger="nft_indexer"):
        log_rpc_call("blockNumber", 12)
    assert "RPC Call - Method: blockNumber, Duration: 12ms" in caplog.text


def test_setup_logging_writes_rotating_files(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        setup_logging("DEBUG", str(tmp_path))
        logging.getLogger("nft_indexer.test").error("disk full")
        for h in root.handlers:
            h.flush()
        assert "disk full" in (tmp_path / "indexer.log").read_text()
        assert "disk full" in (tmp_path / "indexer-error.log").read_text()
    finally:
        for h in root.handlers[:]:
            if h not in before:
                root.removeHandler(h)
                h.close()
        root.setLevel(level)
