"""Exceptions raised while ensuring ServiceAccount token secrets."""

from __future__ import annotations

from kubernetes.client.exceptions import ApiException


class TokenSecretError(Exception):
    """Base class for all token secret reconciliation errors."""


class InvalidServiceAccountError(TokenSecretError, ValueError):
    """The ServiceAccount passed in is missing or incomplete."""


class LeaseContentionError(TokenSecretError):
    """The lease could not be acquired within the retry budget."""

    def __init__(self, lease_name: str, attempts: int):
        super().__init__(f"Could not acquire lease {lease_name} after {attempts} attempts")
        self.lease_name = lease_name
        self.attempts = attempts


class StoreError(TokenSecretError):
    """A Kubernetes API call failed for a reason other than lease contention."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status

    @classmethod
    def from_api_exception(cls, message: str, error: ApiException) -> StoreError:
        """Build a StoreError carrying the HTTP status of the API failure."""
        return cls(f"{message}: ({error.status}) {error.reason}", status=error.status)

    @classmethod
    def from_exception(cls, message: str, error: Exception) -> StoreError:
        """Build a StoreError from any failed API call, including transport failures."""
        if isinstance(error, ApiException):
            return cls.from_api_exception(message, error)
        return cls(f"{message}: {type(error).__name__}: {error}")


class TokenPopulationTimeoutError(TokenSecretError):
    """The token controller did not populate the secret within the poll budget."""

    def __init__(self, namespace: str, secret_name: str, polls: int):
        super().__init__(
            f"Timed out waiting for secret {namespace}/{secret_name} to be populated "
            f"with a token after {polls} polls"
        )
        self.namespace = namespace
        self.secret_name = secret_name
        self.polls = polls


class ReconcileCancelledError(TokenSecretError):
    """A wait loop observed the caller's cancellation signal."""


class BackoffTimeoutError(TokenSecretError):
    """A bounded backoff loop ran out of steps without its condition being met."""

    def __init__(self, steps: int):
        super().__init__(f"Condition not met after {steps} attempts")
        self.steps = steps
