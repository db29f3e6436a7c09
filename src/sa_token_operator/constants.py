"""Constants for the ServiceAccount Token Operator."""

# Labels
LABEL_SERVICE_ACCOUNT_NAME = "cattle.io/service-account.name"

# Annotations
ANNOTATION_SERVICE_ACCOUNT_NAME = "kubernetes.io/service-account.name"
ANNOTATION_ENSURE_TOKEN_SECRET = "tokens.cattle.io/ensure-token-secret"
ANNOTATION_TOKEN_SECRET_NAME = "tokens.cattle.io/token-secret-name"

# Secrets
SECRET_TYPE_SERVICE_ACCOUNT_TOKEN = "kubernetes.io/service-account-token"
SECRET_TOKEN_KEY = "token"
SECRET_NAME_SUFFIX = "-token-"

# Owner
KIND_SERVICE_ACCOUNT = "ServiceAccount"
SERVICE_ACCOUNT_API_VERSION = "v1"

# Leases
LEASE_PREFIX = "sa-token-lease-"
LEASE_HOLDER_IDENTITY = "serviceaccounttoken-controller"
LEASE_DURATION_SECONDS = 30

# Lease acquisition backoff: 500ms, constant nominal delay, full jitter, 50 attempts
LEASE_BACKOFF_DURATION = 0.5
LEASE_BACKOFF_FACTOR = 1.0
LEASE_BACKOFF_JITTER = 1.0
LEASE_BACKOFF_STEPS = 50

# Token population backoff: 2ms doubling up to 100ms, 50 polls
POPULATION_BACKOFF_DURATION = 0.002
POPULATION_BACKOFF_FACTOR = 2.0
POPULATION_BACKOFF_CAP = 0.1
POPULATION_BACKOFF_STEPS = 50

# Field Manager
FIELD_MANAGER = "serviceaccount-token-operator"

# Event Reasons
EVENT_REASON_RECONCILE_STARTED = "ReconcileStarted"
EVENT_REASON_RECONCILE_FAILED = "ReconcileFailed"
EVENT_REASON_TOKEN_SECRET_ASSIGNED = "TokenSecretAssigned"
EVENT_REASON_TOKEN_SECRET_READY = "TokenSecretReady"
