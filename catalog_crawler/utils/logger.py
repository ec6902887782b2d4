from loguru import logger
import os
import sys
import uuid

_logger_initialized = False
_sink_ids: list[int] = []

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | run={extra[run_id]} | {message}"


def new_run_id() -> str:
    return uuid.uuid4().hex[:8]


def setup_logger(log_level: str = "INFO", log_path: str = "logs/crawler.log", run_id: str | None = None):
    """Install the file and console sinks once per process and bind ``run_id``."""
    global _logger_initialized, _sink_ids

    resolved_run_id = run_id or os.getenv("RUN_ID") or new_run_id()

    if not _logger_initialized:
        log_dir = os.path.dirname(log_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        logger.remove()
        logger.configure(extra={"run_id": resolved_run_id})

        file_sink = logger.add(
            log_path,
            rotation="10 MB",
            retention="7 days",
            level=log_level,
            format=LOG_FORMAT,
        )
        console_sink = logger.add(
            sys.stderr,
            colorize=True,
            level=log_level,
            format=LOG_FORMAT,
        )

        _sink_ids = [file_sink, console_sink]
        _logger_initialized = True
    else:
        logger.configure(extra={"run_id": resolved_run_id})

    return logger.bind(run_id=resolved_run_id)
