DEFAULT_SWEEP_BATCH_SIZE = 10
MAX_SWEEP_BATCH_SIZE = 100
DEFAULT_LEASE_SECONDS = 300

DEFAULT_TIMEZONE = "Europe/Madrid"

DEFAULT_REPLY_TIMEOUT_MINUTES = 60
DEFAULT_RETRY_INTERVAL_MINUTES = 24 * 60
DEFAULT_MAX_ACTIVE_LEADS = 20

ERROR_CONTEXT_KEY = "_error"
PROVIDER_EVENTS_TOPIC = "provider_events"
