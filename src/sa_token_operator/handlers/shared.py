"""Shared clients and reconciler for handlers."""

from __future__ import annotations

import threading

from kubernetes import client, config

from ..config import OperatorConfig
from ..reconciler import TokenSecretReconciler

_reconciler: TokenSecretReconciler | None = None
_reconciler_lock = threading.Lock()

# Set on operator shutdown so in-flight waits abort promptly
shutdown_event = threading.Event()


def load_k8s_config() -> None:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def get_reconciler() -> TokenSecretReconciler:
    """Get the process-wide reconciler, building it on first use.

    All handlers share one instance so that they share its local lock registry.
    """
    global _reconciler
    with _reconciler_lock:
        if _reconciler is None:
            load_k8s_config()
            _reconciler = TokenSecretReconciler.from_config(
                OperatorConfig.from_env(),
                client.CoreV1Api(),
                client.CoordinationV1Api(),
            )
        return _reconciler


def set_reconciler(reconciler: TokenSecretReconciler | None) -> None:
    """Replace the shared reconciler (None resets it)."""
    global _reconciler
    with _reconciler_lock:
        _reconciler = reconciler
