import numpy as np
import pytest

from ndgrad.config import EngineConfig, set_config


@pytest.fixture(autouse=True)
def default_engine_config():
    """
    Run every test against a default EngineConfig, regardless of the
    NDGRAD_DTYPE / DEBUG environment, and restore the previous one after.
    """
    previous = set_config(EngineConfig())
    np.random.seed(42)

    yield  # Run the test with the default config in place

    set_config(previous)
