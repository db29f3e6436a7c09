"""Kubernetes API access for secrets, with optional read-through caching."""

from __future__ import annotations

import time
from typing import Any, Callable

from kubernetes import client

from . import metrics
from .utils.cache import get_cached_object, invalidate_cache, make_cache_key, set_cached_object
from .utils.rate_limit import rate_limit_k8s

# A lister takes a namespace and a label selector and returns matching secrets.
# Any cache or client can back it as long as it can be wrapped in this signature.
SecretLister = Callable[[str, str], list[client.V1Secret]]

KIND_SECRET_LIST = "SecretList"


def label_selector(labels: dict[str, str]) -> str:
    """Render a label set as a Kubernetes equality-based label selector."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def call_k8s(operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Invoke a Kubernetes API call with rate limiting and call metrics.

    Args:
        operation: Operation name used as a metric label
        func: Bound API client method
        *args: Positional arguments for the call
        **kwargs: Keyword arguments for the call

    Returns:
        Whatever the API call returns

    Raises:
        client.exceptions.ApiException: Propagated unchanged
    """
    start_time = time.time()
    try:
        result = rate_limit_k8s(func)(*args, **kwargs)
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="success").inc()
        return result
    except Exception:
        metrics.api_call_total.labels(api_type="k8s", operation=operation, result="error").inc()
        raise
    finally:
        duration = time.time() - start_time
        metrics.api_call_duration_seconds.labels(api_type="k8s", operation=operation).observe(duration)


def client_secret_lister(api: client.CoreV1Api) -> SecretLister:
    """Build a lister that always queries the API server."""

    def lister(namespace: str, selector: str) -> list[client.V1Secret]:
        secret_list = call_k8s(
            "list_secrets",
            api.list_namespaced_secret,
            namespace=namespace,
            label_selector=selector,
        )
        return list(secret_list.items or [])

    return lister


def cached_secret_lister(api: client.CoreV1Api) -> SecretLister:
    """Build a lister that serves recent results from the TTL cache."""
    uncached = client_secret_lister(api)

    def lister(namespace: str, selector: str) -> list[client.V1Secret]:
        cache_key = make_cache_key(KIND_SECRET_LIST, namespace, selector)
        cached = get_cached_object(cache_key)
        if cached is not None:
            metrics.api_call_total.labels(api_type="k8s", operation="list_secrets", result="cache_hit").inc()
            return list(cached)

        secrets = uncached(namespace, selector)
        set_cached_object(cache_key, secrets)
        return list(secrets)

    return lister


def invalidate_secret_cache(namespace: str) -> None:
    """Drop cached secret listings for a namespace after a write."""
    invalidate_cache(make_cache_key(KIND_SECRET_LIST, namespace, ""))
