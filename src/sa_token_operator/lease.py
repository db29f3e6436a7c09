"""Cluster-wide mutual exclusion through coordination.k8s.io Lease objects.

The existence of a Lease named after the ServiceAccount is the lock: it is
taken by creating the object and given back by deleting it. Creation is
atomic on the API server, so at most one process can hold a given lease.

A holder that crashes leaves its lease behind. When ``reclaim_expired`` is
enabled, a lease whose last renewal (or acquisition) is older than
``leaseDurationSeconds`` is deleted (guarded by its resourceVersion) so the
next attempt can take it. While a lease is held through ``held`` it is
renewed in the background, and every renewal and the final release are
guarded by the uid of the lease this process created, so a holder never
touches a lease that has since been reclaimed by someone else.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator

from kubernetes import client

from . import metrics
from .constants import (
    FIELD_MANAGER,
    LEASE_BACKOFF_DURATION,
    LEASE_BACKOFF_FACTOR,
    LEASE_BACKOFF_JITTER,
    LEASE_BACKOFF_STEPS,
    LEASE_DURATION_SECONDS,
    LEASE_HOLDER_IDENTITY,
    LEASE_PREFIX,
)
from .errors import BackoffTimeoutError, LeaseContentionError, StoreError
from .store import call_k8s
from .utils.backoff import Backoff, exponential_backoff
from .utils.errors import sanitize_exception

logger = logging.getLogger(__name__)

LEASE_BACKOFF = Backoff(
    duration=LEASE_BACKOFF_DURATION,
    factor=LEASE_BACKOFF_FACTOR,
    jitter=LEASE_BACKOFF_JITTER,
    steps=LEASE_BACKOFF_STEPS,
)

# Renewals per lease duration while a lease is held
RENEWALS_PER_DURATION = 3


def lease_name(name: str) -> str:
    """Return the lease name guarding the ServiceAccount ``name``."""
    return f"{LEASE_PREFIX}{name}"


def micro_time(value: datetime) -> str:
    """Format a timestamp the way the API server expects a MicroTime."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def lease_expired(lease: client.V1Lease, now: datetime | None = None) -> bool:
    """Check whether a lease has outlived its recorded duration.

    Leases without a duration never expire. The renew time is preferred,
    then the acquire time, then the creation timestamp.
    """
    spec = lease.spec
    duration = spec.lease_duration_seconds if spec else None
    if not duration:
        return False

    last_seen = None
    if spec:
        last_seen = spec.renew_time or spec.acquire_time
    last_seen = last_seen or lease.metadata.creation_timestamp
    if last_seen is None:
        return False
    if last_seen.tzinfo is None:
        last_seen = last_seen.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return last_seen + timedelta(seconds=duration) < now


class LeaseManager:
    """Acquires, renews and releases per-ServiceAccount leases."""

    def __init__(
        self,
        api: client.CoordinationV1Api,
        holder_identity: str = LEASE_HOLDER_IDENTITY,
        lease_duration_seconds: int = LEASE_DURATION_SECONDS,
        backoff: Backoff | None = None,
        reclaim_expired: bool = True,
        renew_interval: float | None = None,
    ):
        """Initialize the lease manager.

        Args:
            api: Kubernetes CoordinationV1Api instance
            holder_identity: Identity recorded on created leases
            lease_duration_seconds: Duration recorded on created leases
            backoff: Retry policy while the lease is held by someone else
            reclaim_expired: Delete leases whose recorded duration has elapsed
            renew_interval: Seconds between renewals while held (a third of the duration if omitted)
        """
        self.api = api
        self.holder_identity = holder_identity
        self.lease_duration_seconds = lease_duration_seconds
        self.backoff = backoff or LEASE_BACKOFF
        self.reclaim_expired = reclaim_expired
        self.renew_interval = renew_interval or lease_duration_seconds / RENEWALS_PER_DURATION
        self._held_uids: dict[tuple[str, str], str | None] = {}
        self._held_lock = threading.Lock()

    def build_lease(self, namespace: str, name: str) -> client.V1Lease:
        """Build the Lease object that represents the lock for ``name``."""
        now = datetime.now(timezone.utc)
        return client.V1Lease(
            metadata=client.V1ObjectMeta(name=lease_name(name), namespace=namespace),
            spec=client.V1LeaseSpec(
                holder_identity=self.holder_identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )

    def held_uid(self, namespace: str, name: str) -> str | None:
        """Return the uid of the lease this manager currently holds for ``name``."""
        with self._held_lock:
            return self._held_uids.get((namespace, name))

    def _try_create(self, namespace: str, name: str) -> bool:
        try:
            created = call_k8s(
                "create_lease",
                self.api.create_namespaced_lease,
                namespace=namespace,
                body=self.build_lease(namespace, name),
                field_manager=FIELD_MANAGER,
            )
        except client.exceptions.ApiException as e:
            if e.status == 409:
                metrics.lease_acquire_attempts_total.labels(result="contended").inc()
                return False
            metrics.lease_acquire_attempts_total.labels(result="error").inc()
            raise StoreError.from_api_exception(
                f"Error creating lease {namespace}/{lease_name(name)}", e
            ) from e
        except Exception as e:
            metrics.lease_acquire_attempts_total.labels(result="error").inc()
            raise StoreError.from_exception(f"Error creating lease {namespace}/{lease_name(name)}", e) from e

        metrics.lease_acquire_attempts_total.labels(result="acquired").inc()
        uid = created.metadata.uid if created is not None and created.metadata is not None else None
        with self._held_lock:
            self._held_uids[(namespace, name)] = uid
        return True

    def _reclaim_if_expired(self, namespace: str, name: str) -> bool:
        """Delete the current lease if it has expired.

        Returns:
            True if an expired lease was removed
        """
        full_name = lease_name(name)
        try:
            existing = call_k8s(
                "read_lease", self.api.read_namespaced_lease, name=full_name, namespace=namespace
            )
        except client.exceptions.ApiException as e:
            if e.status == 404:
                # Released between our create and read
                return True
            raise StoreError.from_api_exception(f"Error reading lease {namespace}/{full_name}", e) from e
        except Exception as e:
            raise StoreError.from_exception(f"Error reading lease {namespace}/{full_name}", e) from e

        if not lease_expired(existing):
            return False

        logger.warning(
            f"Lease {namespace}/{full_name} held by {existing.spec.holder_identity} has expired, reclaiming"
        )
        try:
            call_k8s(
                "delete_lease",
                self.api.delete_namespaced_lease,
                name=full_name,
                namespace=namespace,
                body=client.V1DeleteOptions(
                    preconditions=client.V1Preconditions(
                        resource_version=existing.metadata.resource_version,
                    ),
                ),
            )
        except client.exceptions.ApiException as e:
            # 404: someone else reclaimed it, 409: it was renewed or replaced
            if e.status in (404, 409):
                return e.status == 404
            raise StoreError.from_api_exception(f"Error reclaiming lease {namespace}/{full_name}", e) from e
        except Exception as e:
            raise StoreError.from_exception(f"Error reclaiming lease {namespace}/{full_name}", e) from e
        return True

    def acquire(self, namespace: str, name: str, cancel: threading.Event | None = None) -> int:
        """Acquire the lease for ``name``, blocking with backoff while it is held elsewhere.

        Args:
            namespace: Namespace of the ServiceAccount
            name: Name of the ServiceAccount
            cancel: Optional event that aborts the wait when set

        Returns:
            Number of attempts it took

        Raises:
            LeaseContentionError: If the lease stayed taken for the whole retry budget
            StoreError: If creating the lease failed for any other reason
            ReconcileCancelledError: If ``cancel`` was set while waiting
        """

        def attempt() -> bool:
            if self._try_create(namespace, name):
                return True
            if self.reclaim_expired and self._reclaim_if_expired(namespace, name):
                return self._try_create(namespace, name)
            return False

        try:
            attempts = exponential_backoff(self.backoff, attempt, cancel=cancel)
        except BackoffTimeoutError as e:
            raise LeaseContentionError(f"{namespace}/{lease_name(name)}", e.steps) from e

        logger.debug(f"Acquired lease {namespace}/{lease_name(name)} after {attempts} attempt(s)")
        return attempts

    def renew(self, namespace: str, name: str) -> bool:
        """Move the renew time of the held lease forward.

        Transient failures are logged and retried on the next renewal.

        Returns:
            False if the lease is gone or has been replaced by another holder
        """
        full_name = lease_name(name)
        body: dict[str, Any] = {"spec": {"renewTime": micro_time(datetime.now(timezone.utc))}}
        uid = self.held_uid(namespace, name)
        if uid:
            body["metadata"] = {"uid": uid}
        try:
            call_k8s(
                "renew_lease",
                self.api.patch_namespaced_lease,
                name=full_name,
                namespace=namespace,
                body=body,
                field_manager=FIELD_MANAGER,
            )
        except client.exceptions.ApiException as e:
            if e.status in (404, 409):
                metrics.lease_renew_total.labels(result="lost").inc()
                logger.error(f"Lease {namespace}/{full_name} was lost while held")
                return False
            metrics.lease_renew_total.labels(result="error").inc()
            logger.warning(f"Error renewing lease {namespace}/{full_name}: {sanitize_exception(e)}")
            return True
        except Exception as e:
            metrics.lease_renew_total.labels(result="error").inc()
            logger.warning(f"Error renewing lease {namespace}/{full_name}: {sanitize_exception(e)}")
            return True
        metrics.lease_renew_total.labels(result="renewed").inc()
        return True

    def _renew_until(self, namespace: str, name: str, stop: threading.Event) -> None:
        while not stop.wait(self.renew_interval):
            if not self.renew(namespace, name):
                return

    def release(self, namespace: str, name: str) -> bool:
        """Delete the lease for ``name``.

        Only the lease this manager created is deleted; one that was
        reclaimed and recreated by another holder is left alone. Failures
        are logged and reported through the return value only; the caller
        has already finished its critical section.

        Returns:
            True if this manager's lease is gone
        """
        full_name = lease_name(name)
        with self._held_lock:
            uid = self._held_uids.pop((namespace, name), None)

        kwargs: dict[str, Any] = {"name": full_name, "namespace": namespace}
        if uid:
            kwargs["body"] = client.V1DeleteOptions(preconditions=client.V1Preconditions(uid=uid))
        try:
            call_k8s("delete_lease", self.api.delete_namespaced_lease, **kwargs)
        except client.exceptions.ApiException as e:
            if e.status == 404:
                metrics.lease_release_total.labels(result="not_found").inc()
                return True
            if e.status == 409 and uid:
                metrics.lease_release_total.labels(result="lost").inc()
                logger.warning(f"Lease {namespace}/{full_name} was taken over by another holder before release")
                return True
            metrics.lease_release_total.labels(result="error").inc()
            logger.error(f"Error releasing lease {namespace}/{full_name}: {sanitize_exception(e)}")
            return False
        except Exception as e:
            metrics.lease_release_total.labels(result="error").inc()
            logger.error(f"Error releasing lease {namespace}/{full_name}: {sanitize_exception(e)}")
            return False
        metrics.lease_release_total.labels(result="released").inc()
        return True

    @contextmanager
    def held(self, namespace: str, name: str, cancel: threading.Event | None = None) -> Iterator[None]:
        """Hold the lease for ``name`` for the duration of the block, renewing it meanwhile."""
        self.acquire(namespace, name, cancel=cancel)
        stop = threading.Event()
        renewer = threading.Thread(
            target=self._renew_until,
            args=(namespace, name, stop),
            name=f"lease-renew-{namespace}-{name}",
            daemon=True,
        )
        renewer.start()
        try:
            yield
        finally:
            stop.set()
            renewer.join()
            self.release(namespace, name)
