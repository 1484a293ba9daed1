"""
Logging and console helpers for stackforge.

Log records carry two optional extras, ``event`` (a dotted name such as
``operation.completed``) and ``metadata`` (a JSON-serializable dict). The
structured formatter writes them as one JSON object per line, stamped with
the id of the run that produced them.
"""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

if TYPE_CHECKING:
    from stackforge.config import StackforgeConfig

LOGGER_NAME = "stackforge"

console = Console(highlight=False)

_PLAIN_FORMAT = "%(asctime)s %(levelname)-7s [%(run_id)s] %(name)s: %(message)s"


class RunContextFilter(logging.Filter):
    """Stamp every record with the current run id."""

    def __init__(self, run_id: Optional[str] = None):
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id or "-"
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "run_id": getattr(record, "run_id", None),
            "msg": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if event:
            entry["event"] = event
        metadata = getattr(record, "metadata", None)
        if metadata:
            entry["metadata"] = metadata
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    config: "StackforgeConfig",
    run_id: Optional[str] = None,
    console_output: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure the ``stackforge`` logger from the run configuration.

    Handlers from a previous call are closed and replaced, so this is safe
    to call once per command invocation.

    Args:
        config: Loaded configuration (log file, level, format, console)
        run_id: Run id stamped on every record
        console_output: Override ``config.console_output``

    Returns:
        The configured ``stackforge`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.getLevelName(config.log_level.upper()))

    context = RunContextFilter(run_id)

    log_path = config.get_log_file_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    if config.log_format == "structured":
        file_handler.setFormatter(StructuredFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    file_handler.addFilter(context)
    logger.addHandler(file_handler)

    if config.console_output if console_output is None else console_output:
        if config.log_format == "pretty":
            stream_handler: logging.Handler = RichHandler(
                console=Console(stderr=True),
                show_time=False,
                show_path=False,
                markup=False,
                rich_tracebacks=True,
            )
        else:
            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        stream_handler.addFilter(context)
        logger.addHandler(stream_handler)

    return logger


def format_duration(seconds: float) -> str:
    """Render seconds as ``850ms``, ``42s``, ``3m 05s`` or ``1h 02m``."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


def _status(marker: str, style: str, message: str) -> None:
    # Messages hold user text (paths, ids, reasons) and are never parsed as markup
    console.print(Text.assemble((marker, style), " ", message))


def print_banner(title: str) -> None:
    console.rule(Text(title, style="bold blue"))


def print_success(message: str) -> None:
    _status("✓", "bold green", message)


def print_error(message: str) -> None:
    _status("✗", "bold red", message)


def print_warning(message: str) -> None:
    _status("!", "bold yellow", message)


def print_info(message: str) -> None:
    _status("·", "cyan", message)
