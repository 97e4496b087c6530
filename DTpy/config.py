"""
Library-wide configuration.

Values come from the ``Config`` defaults, overridden by ``DTPY_*``
environment variables at first use and by explicit ``set_config`` calls.
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

_ENV_PREFIX = "DTPY_"


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """
    Runtime options.

    Attributes:
        default_dtype: Element type of constants built from Python numbers
        strict_shapes: Report every open shape variable at finalize time, even
            when the execution engine could resolve it dynamically
        eval_timeout: Default evaluation deadline in seconds (None disables it)
        seed: Seed for random initializers (None draws fresh entropy)
        memoize: Collapse structurally identical expressions into one node
        log_level: Level used by ``configure_logging``
    """

    default_dtype: str = "float64"
    strict_shapes: bool = False
    eval_timeout: Optional[float] = None
    seed: Optional[int] = None
    memoize: bool = True
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "Config":
        """Builds a config from the defaults and ``DTPY_*`` variables."""
        overrides: dict = {}
        for f in fields(cls):
            raw = os.environ.get(_ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.name in ("strict_shapes", "memoize"):
                overrides[f.name] = _parse_bool(raw)
            elif f.name == "eval_timeout":
                overrides[f.name] = float(raw)
            elif f.name == "seed":
                overrides[f.name] = int(raw)
            else:
                overrides[f.name] = raw
        return cls(**overrides)


_config: Optional[Config] = None


def get_config() -> Config:
    """Returns the active configuration."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def set_config(**overrides: Any) -> Config:
    """Replaces fields of the active configuration and returns the new one."""
    global _config
    _config = replace(get_config(), **overrides)
    return _config


def reset_config() -> None:
    """Drops explicit overrides; the next ``get_config`` re-reads the env."""
    global _config
    _config = None


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Attaches a stream handler to the ``DTpy`` logger.

    The library itself only installs a ``NullHandler``; applications and
    scripts call this to see graph construction and evaluation logs.
    """
    logger = logging.getLogger("DTpy")
    level = level or os.environ.get(_ENV_PREFIX + "LOG_LEVEL") or get_config().log_level
    logger.setLevel(level.upper())
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
    return logger
