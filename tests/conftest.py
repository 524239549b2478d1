"""
Shared pytest configuration for the Bookstore Platform test suite.
"""

import pytest
from django.core.cache import cache


@pytest.fixture(autouse=True)
def _clear_cache():
    """Throttle counters and task locks live in the cache; start every test clean."""
    cache.clear()
    yield
    cache.clear()
