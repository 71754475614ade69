"""HTTP constants for the fetch layer.

Centralizes all HTTP-related constants to avoid duplication across modules.
"""

# HTTP Status Codes
HTTP_STATUS_OK = 200
HTTP_STATUS_OK_MIN = 200
HTTP_STATUS_OK_MAX = 300
HTTP_STATUS_PARTIAL_CONTENT = 206
HTTP_STATUS_NOT_FOUND = 404
HTTP_STATUS_UNPROCESSABLE_ENTITY = 422
HTTP_STATUS_TOO_MANY_REQUESTS = 429

# Retry defaults
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:106.0) Gecko/20100101 Firefox/106.0"
)
DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_FACTOR_SECONDS = 3.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_REDIRECTS = 10

# Network outage recovery
DEFAULT_NETWORK_UNAVAILABLE_BACKOFF_SECONDS = 5 * 60.0
DEFAULT_NETWORK_UNAVAILABLE_MAX_WAIT_SECONDS = 6 * 60 * 60.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 10.0
DEFAULT_PROBE_TARGETS = (
    "https://www.google.com",
    "https://wikipedia.org",
    "https://www.cloudflare.com",
    "https://www.facebook.com",
)

# SEC fair-access policy: no more than 10 requests per second
SEC_REQUESTS_PER_SECOND = 10.0
SEC_BURST_SIZE = 10
SEC_ATTEMPTS = 7
SEC_BACKOFF_SECONDS = 10.0
SEC_BACKOFF_ON_429_SECONDS = 601.0  # 10 minutes and 1 second

# Short URL (t.co style) resolution
SHORT_URL_ATTEMPTS = 3
SHORT_URL_BACKOFF_SECONDS = 5.0
SHORT_URL_BACKOFF_ON_429_SECONDS = 60.0

# Incremental streams
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
STREAM_QUEUE_SIZE = 256
STREAM_START_PREFIX = '{"type":"start"'
STREAM_END_PREFIX = '{"type":"end"'
STREAM_END_TYPE = "end"


# Charset used when a text body declares none and is not valid UTF-8
FALLBACK_CHARSET = "windows-1252"
