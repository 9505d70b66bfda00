"""Process-wide logging setup for the LEAFLOW gateway."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

__all__ = ["configure_logging", "resolve_level"]

_MANAGED_HANDLER_FLAG = "_leaflow_managed_handler"
_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _default_log_directory() -> Path:
    """Return ``LEAFLOW_LOG_DIR`` or ``logs/`` beside the nearest project root."""

    env_override = os.environ.get("LEAFLOW_LOG_DIR")
    if env_override:
        return Path(env_override).expanduser()

    module_path = Path(__file__).resolve()
    for candidate in module_path.parents:
        if (candidate / "pyproject.toml").exists() or (candidate / ".git").exists():
            return candidate / "logs"

    return Path.cwd() / "logs"


def resolve_level(level: Union[int, str]) -> int:
    """Accept ``logging.INFO`` style ints or names such as ``"debug"``."""

    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def _remove_managed_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        if getattr(handler, _MANAGED_HANDLER_FLAG, False):
            logger.removeHandler(handler)
            handler.close()


def _install(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    setattr(handler, _MANAGED_HANDLER_FLAG, True)
    logger.addHandler(handler)


def configure_logging(
    log_name: str,
    *,
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
    include_console: bool = True,
) -> Path:
    """Route root logging to ``<log_dir>/<log_name>.log`` (and the console).

    Calling it again replaces the handlers installed by the previous call, so
    a reconfigured process never writes to two log files at once.
    """

    numeric_level = resolve_level(level)
    target_directory = (
        Path(log_dir).expanduser() if log_dir else _default_log_directory()
    )
    target_directory.mkdir(parents=True, exist_ok=True)
    log_path = target_directory / f"{log_name}.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    _remove_managed_handlers(root_logger)

    _install(root_logger, logging.FileHandler(log_path, encoding="utf-8"), numeric_level)
    if include_console:
        _install(root_logger, logging.StreamHandler(), numeric_level)

    logging.captureWarnings(True)

    return log_path
