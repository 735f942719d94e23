import logging
from typing import Optional, Union


def setup_logging(level: Optional[Union[int, str]] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Intended to be called once from the main entrypoint or service startup.
    Safe to call multiple times; subsequent calls are ignored if handlers exist.
    When no level is given, ``monitoring.log_level`` from the config is used.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        from config import config
        level = config.section("monitoring").get("log_level", "INFO")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)
    # aiohttp access logs are noisy at INFO during polling
    logging.getLogger("aiohttp.access").setLevel(max(level, logging.WARNING))
