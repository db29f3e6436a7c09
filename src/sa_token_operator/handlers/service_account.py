"""Handlers keeping token secrets in place for opted-in ServiceAccounts."""

from __future__ import annotations

from typing import Any, Callable

import kopf
from kubernetes import client

from ..constants import (
    ANNOTATION_ENSURE_TOKEN_SECRET,
    ANNOTATION_SERVICE_ACCOUNT_NAME,
    ANNOTATION_TOKEN_SECRET_NAME,
    KIND_SERVICE_ACCOUNT,
    LABEL_SERVICE_ACCOUNT_NAME,
)
from ..errors import InvalidServiceAccountError, TokenSecretError
from ..reconciler import TokenSecretReconciler
from ..store import call_k8s, invalidate_secret_cache
from ..utils.context import with_correlation_id
from ..utils.errors import sanitize_exception
from ..utils.events import emit_token_secret_assigned, emit_token_secret_ready
from .base import BaseHandler
from .shared import get_reconciler, shutdown_event

# Seconds kopf waits before retrying after a transient failure
RETRY_DELAY_SECONDS = 10


class ServiceAccountTokenHandler(BaseHandler):
    """Ensures the token secret of a ServiceAccount and records its name."""

    def __init__(self, reconciler_factory: Callable[[], TokenSecretReconciler] = get_reconciler):
        super().__init__(KIND_SERVICE_ACCOUNT)
        self.reconciler_factory = reconciler_factory

    def reconcile(self, body: dict[str, Any], patch: kopf.Patch) -> str:
        """Ensure the token secret and annotate the ServiceAccount with its name.

        Returns:
            Name of the token secret

        Raises:
            kopf.PermanentError: If the ServiceAccount metadata is unusable
            kopf.TemporaryError: On lease contention, API failures or slow token population
        """
        meta = body.get("metadata") or {}
        with with_correlation_id():
            try:
                secret = self.reconcile_with_metrics(
                    body,
                    lambda: self.reconciler_factory().ensure_secret_for_service_account(
                        meta, cancel=shutdown_event
                    ),
                )
            except InvalidServiceAccountError as e:
                raise kopf.PermanentError(sanitize_exception(e)) from e
            except TokenSecretError as e:
                raise kopf.TemporaryError(sanitize_exception(e), delay=RETRY_DELAY_SECONDS) from e

            secret_name = secret.metadata.name
            annotations = meta.get("annotations") or {}
            if annotations.get(ANNOTATION_TOKEN_SECRET_NAME) != secret_name:
                patch.metadata.annotations[ANNOTATION_TOKEN_SECRET_NAME] = secret_name
                emit_token_secret_assigned(body, secret_name)
            emit_token_secret_ready(body, secret_name)
            self.log_info(meta, f"Token secret {secret_name} is ready", reason="TokenSecretReady", secret=secret_name)
            return secret_name

    def reconcile_for_deleted_secret(self, secret_meta: dict[str, Any]) -> str | None:
        """Re-ensure the token secret after one belonging to an opted-in ServiceAccount was deleted.

        Returns:
            Name of the token secret, or None if the ServiceAccount is gone or not opted in
        """
        annotations = secret_meta.get("annotations") or {}
        labels = secret_meta.get("labels") or {}
        sa_name = annotations.get(ANNOTATION_SERVICE_ACCOUNT_NAME) or labels.get(LABEL_SERVICE_ACCOUNT_NAME)
        namespace = secret_meta.get("namespace")
        if not sa_name or not namespace:
            return None

        reconciler = self.reconciler_factory()
        try:
            sa = call_k8s(
                "read_service_account",
                reconciler.core_api.read_namespaced_service_account,
                name=sa_name,
                namespace=namespace,
            )
        except client.exceptions.ApiException as e:
            if e.status == 404:
                return None
            raise kopf.TemporaryError(sanitize_exception(e), delay=RETRY_DELAY_SECONDS) from e
        except Exception as e:
            raise kopf.TemporaryError(sanitize_exception(e), delay=RETRY_DELAY_SECONDS) from e

        sa_annotations = sa.metadata.annotations or {}
        if sa_annotations.get(ANNOTATION_ENSURE_TOKEN_SECRET) != "true":
            return None

        # Cached listings of this namespace may still hold the deleted secret
        invalidate_secret_cache(namespace)

        sa_meta = {
            "name": sa.metadata.name,
            "namespace": sa.metadata.namespace,
            "uid": sa.metadata.uid,
            "annotations": sa_annotations,
        }
        sa_body = {"apiVersion": "v1", "kind": KIND_SERVICE_ACCOUNT, "metadata": sa_meta}
        patch = kopf.Patch()
        secret_name = self.reconcile(sa_body, patch)
        if patch:
            # Not a ServiceAccount event, so kopf will not apply the patch for us
            try:
                call_k8s(
                    "patch_service_account",
                    reconciler.core_api.patch_namespaced_service_account,
                    name=sa.metadata.name,
                    namespace=sa.metadata.namespace,
                    body={"metadata": {"annotations": {ANNOTATION_TOKEN_SECRET_NAME: secret_name}}},
                )
            except Exception as e:
                raise kopf.TemporaryError(sanitize_exception(e), delay=RETRY_DELAY_SECONDS) from e
        return secret_name


handler = ServiceAccountTokenHandler()


@kopf.on.create("v1", "serviceaccounts", annotations={ANNOTATION_ENSURE_TOKEN_SECRET: "true"})
@kopf.on.update("v1", "serviceaccounts", annotations={ANNOTATION_ENSURE_TOKEN_SECRET: "true"})
@kopf.on.resume("v1", "serviceaccounts", annotations={ANNOTATION_ENSURE_TOKEN_SECRET: "true"})
def handle_service_account(
    body: dict[str, Any],
    patch: kopf.Patch,
    **kwargs: Any,
) -> None:
    """Handle ServiceAccount reconciliation."""
    handler.reconcile(body, patch)


@kopf.on.delete("v1", "secrets", labels={LABEL_SERVICE_ACCOUNT_NAME: kopf.PRESENT}, optional=True)
def handle_token_secret_delete(
    meta: dict[str, Any],
    **kwargs: Any,
) -> None:
    """Restore the token secret of an opted-in ServiceAccount after its deletion."""
    handler.reconcile_for_deleted_secret(meta)
