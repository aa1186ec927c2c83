"""
Runtime configuration for the engine.

The active configuration is process wide. It is read from the environment on
import and can be replaced with :func:`set_config`.
"""

import os
from dataclasses import dataclass

import numpy as np


@dataclass
class EngineConfig:
    """
    Engine-wide settings.

    Attributes:
        default_dtype (str): numpy dtype name used by ``NDArray.ones`` and
            ``NDArray.zeros`` when no dtype is passed. Buffers handed to the
            constructor keep whatever dtype numpy infers for them.
        debug (bool): Whether ``setup_logger`` should log at DEBUG level.
    """

    default_dtype: str = "int64"
    debug: bool = False

    def __post_init__(self):
        dtype = np.dtype(self.default_dtype)
        if not np.issubdtype(dtype, np.number):
            raise ValueError(
                f"default_dtype must be a numeric dtype, got {self.default_dtype!r}"
            )

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Build a config from ``NDGRAD_DTYPE`` and ``DEBUG`` environment variables.

        Returns:
            EngineConfig: The config, with defaults for anything unset.
        """
        return cls(
            default_dtype=os.getenv("NDGRAD_DTYPE", cls.default_dtype),
            debug=bool(os.getenv("DEBUG")),
        )


_config = EngineConfig.from_env()


def get_config() -> EngineConfig:
    return _config


def set_config(config: EngineConfig) -> EngineConfig:
    """
    Replace the active configuration.

    Args:
        config (EngineConfig): The new configuration.

    Returns:
        EngineConfig: The configuration that was active before the call, so
        callers can restore it.
    """
    global _config
    previous = _config
    _config = config
    return previous
