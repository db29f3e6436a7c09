"""Shared fixtures for unit tests."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from fakes import FakeCluster, make_service_account
from sa_token_operator.utils.cache import invalidate_cache


@pytest.fixture(autouse=True)
def fast_k8s_rate_limit():
    """Lift the client-side rate limit and clear caches between tests."""
    invalidate_cache()
    with patch("sa_token_operator.utils.rate_limit._K8S_RATE_LIMIT_PER_SECOND", float("inf")):
        yield
    invalidate_cache()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def service_account():
    return make_service_account()
