"""Lookup, cleanup, creation and population wait for ServiceAccount token secrets."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from kubernetes import client

from . import metrics
from .constants import (
    ANNOTATION_SERVICE_ACCOUNT_NAME,
    FIELD_MANAGER,
    KIND_SERVICE_ACCOUNT,
    LABEL_SERVICE_ACCOUNT_NAME,
    POPULATION_BACKOFF_CAP,
    POPULATION_BACKOFF_DURATION,
    POPULATION_BACKOFF_FACTOR,
    POPULATION_BACKOFF_STEPS,
    SECRET_NAME_SUFFIX,
    SECRET_TOKEN_KEY,
    SECRET_TYPE_SERVICE_ACCOUNT_TOKEN,
    SERVICE_ACCOUNT_API_VERSION,
)
from .errors import BackoffTimeoutError, InvalidServiceAccountError, StoreError, TokenPopulationTimeoutError
from .store import SecretLister, call_k8s, invalidate_secret_cache, label_selector
from .utils.backoff import Backoff, exponential_backoff
from .utils.errors import sanitize_exception

logger = logging.getLogger(__name__)

POPULATION_BACKOFF = Backoff(
    duration=POPULATION_BACKOFF_DURATION,
    factor=POPULATION_BACKOFF_FACTOR,
    cap=POPULATION_BACKOFF_CAP,
    steps=POPULATION_BACKOFF_STEPS,
)

_NO_TIMESTAMP = datetime.max.replace(tzinfo=timezone.utc)


def service_account_secret_prefix(sa: client.V1ServiceAccount) -> str:
    """Return the generateName prefix for the ServiceAccount's token secret."""
    return f"{sa.metadata.name}{SECRET_NAME_SUFFIX}"


def secret_template(sa: client.V1ServiceAccount) -> client.V1Secret:
    """Build a service-account-token Secret for the ServiceAccount.

    The token controller fills in the ``token`` key once the secret exists.
    The owner reference lets garbage collection remove the secret together
    with the ServiceAccount.
    """
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            generate_name=service_account_secret_prefix(sa),
            namespace=sa.metadata.namespace,
            owner_references=[
                client.V1OwnerReference(
                    api_version=SERVICE_ACCOUNT_API_VERSION,
                    kind=KIND_SERVICE_ACCOUNT,
                    name=sa.metadata.name,
                    uid=sa.metadata.uid,
                ),
            ],
            annotations={ANNOTATION_SERVICE_ACCOUNT_NAME: sa.metadata.name},
            labels={LABEL_SERVICE_ACCOUNT_NAME: sa.metadata.name},
        ),
        type=SECRET_TYPE_SERVICE_ACCOUNT_TOKEN,
    )


def is_secret_for_service_account(secret: client.V1Secret, sa: client.V1ServiceAccount) -> bool:
    """Check the secret's type and annotation against the ServiceAccount."""
    if secret.type != SECRET_TYPE_SERVICE_ACCOUNT_TOKEN:
        return False
    annotations = secret.metadata.annotations or {}
    return annotations.get(ANNOTATION_SERVICE_ACCOUNT_NAME) == sa.metadata.name


def secret_sort_key(secret: client.V1Secret) -> tuple[datetime, str]:
    """Order secrets oldest first, then by name; secrets without a timestamp go last."""
    created = secret.metadata.creation_timestamp
    if created is None:
        created = _NO_TIMESTAMP
    elif created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return created, secret.metadata.name or ""


def has_token(secret: client.V1Secret) -> bool:
    """Check whether the token controller has populated the secret."""
    data: dict[str, Any] = secret.data or {}
    return bool(data.get(SECRET_TOKEN_KEY))


def delete_secret(api: client.CoreV1Api, secret: client.V1Secret) -> bool:
    """Delete a secret, logging instead of raising on failure.

    Returns:
        True if the secret was deleted or already gone
    """
    namespace = secret.metadata.namespace
    name = secret.metadata.name
    try:
        call_k8s("delete_secret", api.delete_namespaced_secret, name=name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            metrics.secrets_deleted_total.labels(result="not_found").inc()
            return True
        metrics.secrets_deleted_total.labels(result="error").inc()
        logger.error(f"Unable to delete secret {namespace}/{name}: {sanitize_exception(e)}")
        return False
    except Exception as e:
        metrics.secrets_deleted_total.labels(result="error").inc()
        logger.error(f"Unable to delete secret {namespace}/{name}: {sanitize_exception(e)}")
        return False
    finally:
        invalidate_secret_cache(namespace)
    metrics.secrets_deleted_total.labels(result="success").inc()
    return True


def read_secret(api: client.CoreV1Api, secret: client.V1Secret) -> client.V1Secret | None:
    """Read the current state of a secret from the API server.

    Returns:
        The secret, or None if it no longer exists

    Raises:
        StoreError: If reading the secret failed
    """
    namespace = secret.metadata.namespace
    name = secret.metadata.name
    try:
        return call_k8s("read_secret", api.read_namespaced_secret, name=name, namespace=namespace)
    except client.exceptions.ApiException as e:
        if e.status == 404:
            return None
        raise StoreError.from_api_exception(f"Error reading secret {namespace}/{name}", e) from e
    except Exception as e:
        raise StoreError.from_exception(f"Error reading secret {namespace}/{name}", e) from e


def find_service_account_secret(
    sa: client.V1ServiceAccount | None,
    lister: SecretLister,
    api: client.CoreV1Api,
) -> client.V1Secret | None:
    """Return the canonical token secret for the ServiceAccount, if any.

    Every secret carrying the ServiceAccount's label is considered. The oldest
    valid one is kept; all others, valid duplicates included, are deleted.
    Deletion is best effort and never fails the lookup.

    Args:
        sa: ServiceAccount the secret belongs to
        lister: Lister used to find candidate secrets
        api: Kubernetes CoreV1Api instance used for deletions

    Returns:
        The canonical secret, or None if no valid secret exists

    Raises:
        InvalidServiceAccountError: If no ServiceAccount was given
        StoreError: If listing secrets failed
    """
    if sa is None or sa.metadata is None:
        raise InvalidServiceAccountError("Cannot get secret for nil service account")

    namespace = sa.metadata.namespace
    try:
        candidates = lister(namespace, label_selector({LABEL_SERVICE_ACCOUNT_NAME: sa.metadata.name}))
    except Exception as e:
        raise StoreError.from_exception(
            f"Could not get secrets for service account {namespace}/{sa.metadata.name}", e
        ) from e

    result = None
    for secret in sorted(candidates, key=secret_sort_key):
        if result is None and is_secret_for_service_account(secret, sa):
            result = secret
            continue
        if is_secret_for_service_account(secret, sa):
            logger.warning(
                f"Secret {secret.metadata.namespace}/{secret.metadata.name} duplicates "
                f"{result.metadata.name} for service account {sa.metadata.name}, deleting"
            )
        else:
            logger.warning(
                f"Secret {secret.metadata.namespace}/{secret.metadata.name} is invalid for "
                f"service account {sa.metadata.name}, deleting"
            )
        delete_secret(api, secret)

    return result


def create_service_account_secret(api: client.CoreV1Api, sa: client.V1ServiceAccount) -> client.V1Secret:
    """Create a new token secret for the ServiceAccount.

    Raises:
        StoreError: If the API server rejected the secret
    """
    namespace = sa.metadata.namespace
    try:
        secret = call_k8s(
            "create_secret",
            api.create_namespaced_secret,
            namespace=namespace,
            body=secret_template(sa),
            field_manager=FIELD_MANAGER,
        )
    except Exception as e:
        raise StoreError.from_exception(
            f"Error ensuring secret for service account {namespace}/{sa.metadata.name}", e
        ) from e
    finally:
        invalidate_secret_cache(namespace)

    metrics.secrets_created_total.inc()
    logger.info(f"Created secret {namespace}/{secret.metadata.name} for service account {sa.metadata.name}")
    return secret


def wait_for_token(
    api: client.CoreV1Api,
    secret: client.V1Secret,
    cancel: threading.Event | None = None,
    backoff: Backoff | None = None,
) -> client.V1Secret:
    """Poll the API server until the token controller populates the secret.

    Reads always go to the API server rather than a cache, which may not
    have seen the secret yet.

    Args:
        api: Kubernetes CoreV1Api instance
        secret: Secret to wait for
        cancel: Optional event that aborts the wait when set
        backoff: Poll schedule (defaults to POPULATION_BACKOFF)

    Returns:
        The populated secret

    Raises:
        TokenPopulationTimeoutError: If the token did not appear within the poll budget
        StoreError: If reading the secret failed
        ReconcileCancelledError: If ``cancel`` was set while waiting
    """
    namespace = secret.metadata.namespace
    name = secret.metadata.name
    backoff = backoff or POPULATION_BACKOFF
    current = secret
    polls = 0

    logger.info(f"Waiting for secret {namespace}/{name} to be populated with token")

    def populated() -> bool:
        nonlocal current, polls
        polls += 1
        try:
            current = call_k8s("read_secret", api.read_namespaced_secret, name=name, namespace=namespace)
        except Exception as e:
            raise StoreError.from_exception(f"Error reading secret {namespace}/{name}", e) from e
        return has_token(current)

    try:
        exponential_backoff(backoff, populated, cancel=cancel)
    except BackoffTimeoutError as e:
        raise TokenPopulationTimeoutError(namespace, name, e.steps) from e

    metrics.token_wait_polls.observe(polls)
    return current
