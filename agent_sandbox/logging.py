"""Logging configuration.

All diagnostics go to stderr so that stdout stays free for machine-readable
output (the runner's JSON-lines event stream).
"""

import sys
from typing import TYPE_CHECKING

from loguru import logger


if TYPE_CHECKING:
    from loguru import Record


COLORS = {
    "amber": "#F2B134",  # Warnings
    "green": "#4FA36C",  # Success
    "steel": "#8A9BA8",  # Secondary text, debug
    "slate": "#56626B",  # Separators, trace
    "ivory": "#F1EFE7",  # Primary text
    "red": "#C8553D",  # Errors
    "blue": "#4C8BD9",  # Info, identifiers
}

RESET = "\033[0m"

# Extra fields whose values are never printed.
_SECRET_FIELDS = frozenset({"token", "api_key", "private_key", "passphrase", "password"})


def _log_format(record: "Record") -> str:
    """Build the loguru format string for one record.

    Structured extra fields are appended as ``key=value`` pairs; fields
    named like secrets are masked.

    Args:
        record: Loguru record containing log metadata, message, and level.

    Returns:
        Format string with loguru color tags.
    """
    level = record["level"].name

    level_colors = {
        "TRACE": f"<fg {COLORS['slate']}>",
        "DEBUG": f"<fg {COLORS['steel']}>",
        "INFO": f"<fg {COLORS['blue']}>",
        "SUCCESS": f"<fg {COLORS['green']}>",
        "WARNING": f"<fg {COLORS['amber']}>",
        "ERROR": f"<fg {COLORS['red']}>",
        "CRITICAL": f"<fg {COLORS['red']}><bold>",
    }
    color = level_colors.get(level, f"<fg {COLORS['ivory']}>")
    close = "</>"

    fmt = (
        f"<fg {COLORS['steel']}>{{time:HH:mm:ss}}{close}"
        f" <fg {COLORS['slate']}>│{close} "
        f"{color}{{level: <8}}{close}"
        f"<fg {COLORS['slate']}>│{close} "
        f"<fg {COLORS['steel']}>{{name}}{close}"
        f"<fg {COLORS['slate']}>:{close}"
        f"<fg {COLORS['ivory']}>{{message}}{close}"
    )

    extra = record["extra"]
    if extra:
        extra_str = " ".join(
            f"{k}=***" if k in _SECRET_FIELDS else f"{k}={v!r}" for k, v in extra.items()
        )
        # Escape braces to prevent loguru format string injection
        extra_str = extra_str.replace("{", "{{").replace("}", "}}")
        fmt += f" <fg {COLORS['steel']}>│ {extra_str}{close}"

    fmt += "\n"
    if record["exception"]:
        fmt += "{exception}\n"
    return fmt


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default handler with the formatted stderr handler.

    Args:
        level: Minimum log level to display (e.g., "DEBUG", "INFO", "WARNING").
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=_log_format,
        colorize=True,
    )


def log_server_startup(host: str, port: int, database_path: str, version: str) -> None:
    """Print the server's version, URL and database path to stderr.

    Args:
        host: Server bind host address.
        port: Server bind port number.
        database_path: Path to SQLite database file.
        version: Application version string.
    """
    amber = "\033[38;2;242;177;52m"
    green = "\033[38;2;79;163;108m"
    blue = "\033[38;2;76;139;217m"
    steel = "\033[38;2;138;155;168m"

    config_lines = [
        f"  {steel}Version:{RESET}  {amber}v{version}{RESET}",
        f"  {steel}Server:{RESET}   {blue}http://{host}:{port}{RESET}",
        f"  {steel}Database:{RESET} {green}{database_path}{RESET}",
        "",
    ]
    sys.stderr.write("\n".join(config_lines))
    sys.stderr.flush()
