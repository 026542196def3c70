"""Application settings constants."""

from __future__ import annotations

# Extension and codec of every stored artifact.
AUDIO_FORMAT = "mp3"

# Search results are memoized for one hour.
SEARCH_CACHE_TTL_SECONDS = 3600

# Number of entries requested from the extractor per search.
SEARCH_LIMIT = 10

# Completed jobs stay joinable for this long so near-simultaneous requests share the result.
JOB_GRACE_SECONDS = 10.0

# Upper bound for one HTTP caller waiting on a conversion.
REQUEST_TIMEOUT_SECONDS = 600.0

# Budgets for the external extractor process.
CONVERT_TIMEOUT_SECONDS = 900.0
METADATA_TIMEOUT_SECONDS = 90.0
DOWNLOAD_SOCKET_TIMEOUT_SECONDS = 300
METADATA_SOCKET_TIMEOUT_SECONDS = 60

# Retries apply to Timeout and RateLimited failures only.
CONVERT_MAX_ATTEMPTS = 2
RETRY_BASE_DELAY_SECONDS = 2.0

MAX_CONCURRENT_CONVERSIONS = 4

DEFAULT_SEARCH_BACKEND = "soundcloud"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:3000",
    "http://127.0.0.1:3000",
)

# Public path prefix under which local artifacts are served.
AUDIO_PUBLIC_PREFIX = "/audio"

# Presigned GET URLs for remote artifacts (SigV4 caps this at 7 days).
S3_PRESIGN_SECONDS = 7 * 24 * 3600
