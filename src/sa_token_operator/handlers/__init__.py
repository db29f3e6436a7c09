"""Handler modules for ServiceAccount token secrets."""

# Import handlers to register them - all handlers register themselves via @kopf decorators
from . import service_account  # noqa: F401
