"""Ensure-or-create reconciliation of ServiceAccount token secrets."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from kubernetes import client

from . import metrics
from .config import OperatorConfig
from .constants import KIND_SERVICE_ACCOUNT
from .errors import InvalidServiceAccountError
from .lease import LeaseManager
from .locks import LocalLockRegistry, make_lock_key
from .secrets import (
    POPULATION_BACKOFF,
    create_service_account_secret,
    find_service_account_secret,
    has_token,
    read_secret,
    wait_for_token,
)
from .store import SecretLister, cached_secret_lister, client_secret_lister, invalidate_secret_cache
from .tracing import add_span_attribute, trace_span
from .utils.backoff import Backoff

logger = logging.getLogger(__name__)


def service_account_from_meta(meta: Mapping[str, Any]) -> client.V1ServiceAccount:
    """Build a ServiceAccount object from kopf-style resource metadata.

    Raises:
        InvalidServiceAccountError: If name, namespace or uid is missing
    """
    if not meta:
        raise InvalidServiceAccountError("Could not ensure secret for invalid service account")
    missing = [field for field in ("name", "namespace", "uid") if not meta.get(field)]
    if missing:
        raise InvalidServiceAccountError(
            f"Could not ensure secret for service account missing {', '.join(missing)}"
        )
    return client.V1ServiceAccount(
        api_version="v1",
        kind=KIND_SERVICE_ACCOUNT,
        metadata=client.V1ObjectMeta(
            name=meta["name"],
            namespace=meta["namespace"],
            uid=meta["uid"],
        ),
    )


def _validate(sa: client.V1ServiceAccount | Mapping[str, Any] | None) -> client.V1ServiceAccount:
    if sa is None:
        raise InvalidServiceAccountError("Could not ensure secret for invalid service account")
    if isinstance(sa, Mapping):
        return service_account_from_meta(sa.get("metadata", sa))
    if sa.metadata is None or not sa.metadata.name or not sa.metadata.namespace:
        raise InvalidServiceAccountError("Could not ensure secret for invalid service account")
    if not sa.metadata.uid:
        raise InvalidServiceAccountError(
            f"Could not ensure secret for service account {sa.metadata.namespace}/{sa.metadata.name} missing uid"
        )
    return sa


class TokenSecretReconciler:
    """Gets or creates the token secret of a ServiceAccount.

    Safe to call concurrently and repeatedly. Calls for the same
    ServiceAccount are serialized by a process-local lock and, across
    processes, by a Lease held for the whole lookup/create/wait sequence.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        coordination_api: client.CoordinationV1Api,
        lock_registry: LocalLockRegistry | None = None,
        lease_manager: LeaseManager | None = None,
        secret_lister: SecretLister | None = None,
        population_backoff: Backoff | None = None,
        verify_listed_secret: bool = False,
    ):
        """Initialize the reconciler.

        Args:
            core_api: Kubernetes CoreV1Api instance
            coordination_api: Kubernetes CoordinationV1Api instance
            lock_registry: Process-local lock registry (a private one is created if omitted)
            lease_manager: Lease manager (built from ``coordination_api`` if omitted)
            secret_lister: Lister for candidate secrets (queries the API server if omitted)
            population_backoff: Poll schedule while waiting for the token
            verify_listed_secret: Re-read the listed secret before trusting it, for listers that may be stale
        """
        self.core_api = core_api
        self.lock_registry = lock_registry or LocalLockRegistry()
        self.lease_manager = lease_manager or LeaseManager(coordination_api)
        self.secret_lister = secret_lister or client_secret_lister(core_api)
        self.population_backoff = population_backoff or POPULATION_BACKOFF
        self.verify_listed_secret = verify_listed_secret

    @classmethod
    def from_config(
        cls,
        config: OperatorConfig,
        core_api: client.CoreV1Api,
        coordination_api: client.CoordinationV1Api,
    ) -> TokenSecretReconciler:
        """Build a reconciler wired according to the operator configuration."""
        lister = cached_secret_lister(core_api) if config.use_secret_cache else client_secret_lister(core_api)
        lease_manager = LeaseManager(
            coordination_api,
            holder_identity=config.lease_holder_identity,
            lease_duration_seconds=config.lease_duration_seconds,
            reclaim_expired=config.lease_reclaim_expired,
        )
        return cls(
            core_api,
            coordination_api,
            lease_manager=lease_manager,
            secret_lister=lister,
            verify_listed_secret=config.use_secret_cache,
        )

    def ensure_secret_for_service_account(
        self,
        sa: client.V1ServiceAccount | Mapping[str, Any] | None,
        cancel: threading.Event | None = None,
    ) -> client.V1Secret:
        """Get or create the populated token secret for a ServiceAccount.

        Args:
            sa: ServiceAccount object, or its metadata as a dict
            cancel: Optional event that aborts any wait when set

        Returns:
            The secret, populated with a token

        Raises:
            InvalidServiceAccountError: If the ServiceAccount is missing or incomplete
            LeaseContentionError: If the lease could not be acquired in time
            StoreError: If an API call failed
            TokenPopulationTimeoutError: If the token never appeared
            ReconcileCancelledError: If ``cancel`` was set while waiting
        """
        start_time = time.time()
        try:
            sa = _validate(sa)
            namespace = sa.metadata.namespace
            name = sa.metadata.name

            with trace_span(
                "ensure_token_secret",
                kind=KIND_SERVICE_ACCOUNT,
                attributes={"serviceaccount.name": name, "serviceaccount.namespace": namespace},
            ):
                with self.lock_registry.hold(make_lock_key(namespace, name)):
                    with self.lease_manager.held(namespace, name, cancel=cancel):
                        secret = self._ensure_locked(sa, cancel)
                add_span_attribute("secret.name", secret.metadata.name)
        except Exception as e:
            metrics.ensure_total.labels(result=type(e).__name__).inc()
            raise
        finally:
            metrics.ensure_duration_seconds.observe(time.time() - start_time)

        metrics.ensure_total.labels(result="success").inc()
        return secret

    def _ensure_locked(self, sa: client.V1ServiceAccount, cancel: threading.Event | None) -> client.V1Secret:
        secret = find_service_account_secret(sa, self.secret_lister, self.core_api)
        if secret is not None and self.verify_listed_secret:
            secret = read_secret(self.core_api, secret)
            if secret is None:
                # The listing still held a secret that has since been deleted
                invalidate_secret_cache(sa.metadata.namespace)
                secret = find_service_account_secret(sa, self.secret_lister, self.core_api)

        if secret is None:
            secret = create_service_account_secret(self.core_api, sa)

        if has_token(secret):
            return secret

        return wait_for_token(self.core_api, secret, cancel=cancel, backoff=self.population_backoff)
