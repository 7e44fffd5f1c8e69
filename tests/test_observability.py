import json
import logging
from pathlib import Path

from archivist.observability import LOGGER_NAME, setup_logging


def test_file_handler_writes_json_lines_with_extra_fields(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "archivist.jsonl"
    logger = setup_logging("debug", log_file)
    try:
        logging.getLogger(f"{LOGGER_NAME}.scheduler").info(
            "dispatch repository=photos", extra={"event": {"event": "dispatch", "repository": "photos"}}
        )
        for handler in logger.handlers:
            handler.flush()

        [line] = log_file.read_text(encoding="utf-8").splitlines()
        payload = json.loads(line)
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True

    assert payload["level"] == "INFO"
    assert payload["logger"] == "archivist.scheduler"
    assert payload["message"] == "dispatch repository=photos"
    assert payload["fields"]["event"]["repository"] == "photos"
    assert logger.level == logging.DEBUG


def test_setup_logging_replaces_previous_handlers() -> None:
    logger = setup_logging()
    try:
        setup_logging("WARNING")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
        logger.propagate = True
