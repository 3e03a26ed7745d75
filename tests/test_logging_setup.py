import logging
from pathlib import Path

from ralph.logging_setup import LOG_FILENAME, setup_logging


def _ralph_handlers() -> list[logging.Handler]:
    return [handler for handler in logging.getLogger().handlers if handler.get_name() == "ralph"]


def test_file_handler_writes_supervisor_log(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    setup_logging(log_dir, "WARNING")
    try:
        logging.getLogger("ralph.supervisor").info("attempt 2 rolled over")
        for handler in _ralph_handlers():
            handler.flush()

        text = (log_dir / LOG_FILENAME).read_text(encoding="utf-8")
        assert "attempt 2 rolled over" in text
        assert "INFO" in text
    finally:
        setup_logging(None)


def test_repeated_setup_replaces_handlers(tmp_path: Path) -> None:
    setup_logging(tmp_path / "logs")
    setup_logging(tmp_path / "logs")
    try:
        assert len(_ralph_handlers()) == 2
    finally:
        setup_logging(None)

    assert len(_ralph_handlers()) == 1
