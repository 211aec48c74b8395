"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the TESTING environment variable so no .env file is loaded, and
points the limiter at the in-memory store so no Redis server is needed.
"""

import os
from unittest.mock import Mock

import pytest

# CRITICAL: Set this before any imports that might load settings
os.environ["TESTING"] = "true"

os.environ.setdefault("LIMITER_STORE_BACKEND", "memory")
os.environ.setdefault("LIMITER_CAPACITY", "3")
os.environ.setdefault("LIMITER_REFILL_RATE", "1")
os.environ.setdefault("LIMITER_TTL_SECONDS", "10")
os.environ.setdefault("LOG_FORMAT", "json")


START_TIME = 1_700_000_000.0


@pytest.fixture
def clock() -> Mock:
    """Controllable time source; advance with ``clock.return_value += n``."""
    return Mock(return_value=START_TIME)


@pytest.fixture(autouse=True)
def reset_cached_limiter():
    """Drop the module-level limiter so each test builds its own."""
    from app.core import rate_limit as rate_limit_module

    rate_limit_module._limiter = None
    yield
    rate_limit_module._limiter = None
