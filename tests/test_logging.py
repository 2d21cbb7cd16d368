import logging
from pathlib import Path

from ci_pipeline.foundation.logging_utils import close_logger, setup_operational_logger


def test_operational_logger_writes_file_and_does_not_propagate(tmp_path: Path):
    logger, log_file = setup_operational_logger(str(tmp_path / "logs"), "run_x", console_level=logging.ERROR)
    try:
        logger.debug("debug detail → file only")
        logger.info("Stage: build/rpms")
    finally:
        close_logger(logger)

    assert log_file == str(tmp_path / "logs" / "run_x_oplog.log")
    content = Path(log_file).read_text(encoding="utf-8")
    assert "| DEBUG | debug detail → file only" in content
    assert "| INFO | Stage: build/rpms" in content
    assert logger.propagate is False
    assert logger.handlers == []


def test_setup_twice_does_not_duplicate_handlers(tmp_path: Path):
    first, _ = setup_operational_logger(str(tmp_path), "run_y")
    second, _ = setup_operational_logger(str(tmp_path), "run_y")
    try:
        assert first is second
        assert len(second.handlers) == 2
    finally:
        close_logger(second)
