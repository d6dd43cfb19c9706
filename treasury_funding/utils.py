"""Utility functions shared by the scripts and the gateway modules."""

import datetime
import logging
import os
from pathlib import Path
from typing import Optional

import coloredlogs


def native_datetime_utc_now() -> datetime.datetime:
    """Get current UTC time as a naive datetime.

    All timestamps in persisted job records are naive UTC.
    """
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_unix_timestamp(dt: datetime.datetime) -> float:
    """Convert a naive UTC datetime to a UNIX timestamp."""
    return dt.replace(tzinfo=datetime.timezone.utc).timestamp()


def from_unix_timestamp(timestamp: float) -> datetime.datetime:
    """Convert a UNIX timestamp to a naive UTC datetime."""
    return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).replace(tzinfo=None)


def format_usdc(raw_amount: int, decimals: int = 6) -> str:
    """Human readable token amount for log output.

    >>> format_usdc(5_000000)
    '5.000000'
    """
    sign = "-" if raw_amount < 0 else ""
    raw_amount = abs(raw_amount)
    whole, fraction = divmod(raw_amount, 10**decimals)
    return f"{sign}{whole}.{fraction:0{decimals}d}"


def setup_console_logging(
    default_log_level="info",
    simplified_logging=False,
    log_file: Path | None = None,
    std_out_log_level: Optional[int] = None,
    clear_log_file=True,
) -> logging.Logger:
    """Set up coloured log output for the command line scripts.

    - Log level is read from ``LOG_LEVEL`` environment variable
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.
        The file is always logged at least with INFO level.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert isinstance(numeric_level, int), f"Unknown log level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
    else:
        fmt = "%(asctime)s %(name)-44s %(message)s"
    date_fmt = "%H:%M:%S"

    coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)

    root = logging.getLogger()

    if log_file:
        assert isinstance(log_file, Path), "log_file must be a Path"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        min_level = min(logging.INFO, numeric_level)
        mode = "w" if clear_log_file else "a"

        file_handler = logging.FileHandler(log_file, mode=mode, encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return root
