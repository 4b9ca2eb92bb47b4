DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_NOTIFICATION_HANDLER = "notify"
EVENT_TOPIC_PREFIX = "stepwise"
DEFAULT_EVENT_BUFFER_SIZE = 1000
DEFAULT_DEFINITION_CACHE_SIZE = 128
DEFAULT_MAX_CONTINUATION_FAILURES = 5
