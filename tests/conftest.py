"""
pytest configuration and shared fixtures.
"""

import logging

import numpy as np
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)


@pytest.fixture(autouse=True)
def _debug_logging(caplog):
    """Capture pymixed debug records so failing tests show the fit trace."""
    caplog.set_level(logging.DEBUG, logger='pymixed')
