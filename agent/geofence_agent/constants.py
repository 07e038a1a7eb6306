"""
Constants, thresholds, intervals and wire-level limits.
"""

AGENT_VERSION = "1.2.0"

# ─── Geo ─────────────────────────────────────────────────────────
EARTH_RADIUS_M = 6_371_000     # Mean Earth radius used by the haversine formula
MAX_RADIUS_M = 10_000          # Largest zone radius accepted at ingestion (10 km)
MAX_NOTES_LEN = 500

# ─── Scheduling ──────────────────────────────────────────────────
SAMPLE_POLL_MS = 200           # Drain the sample queue every 200ms
SAMPLE_BATCH_MAX = 200         # Max samples handled per poll
ZONE_REFRESH_SEC = 300         # Re-fetch zones every 5 minutes
CONNECTIVITY_CHECK_SEC = 15    # How often to probe the server while offline
LISTENER_CHECK_SEC = 30        # Listener watchdog period
FEED_POLL_SEC = 1.0            # Sample feed file tail interval

# ─── Network ─────────────────────────────────────────────────────
API_TIMEOUT_FETCH = 15         # Zone list fetch
API_TIMEOUT_SUBMIT = 30        # Attendance submit (cold start + DB write)
SUBMIT_PATH = "/api/attendance/log"
ZONES_PATH = "/api/geofence/regions"

# ─── Delivery / backoff ──────────────────────────────────────────
DELIVERY_BATCH_SIZE = 20       # Entries attempted per worker pass
BACKOFF_BASE_SEC = 5           # First retry after 5s, then 10s, 20s, ...
BACKOFF_MAX_SEC = 300          # Never wait more than 5 minutes between attempts
WORKER_IDLE_SEC = 60           # Worker re-checks the outbox at least this often
OUTBOX_COMPACT_LINES = 500     # Rewrite the journal once it holds this many records
OUTBOX_LOCK_TIMEOUT_SEC = 30   # Wait this long for another process holding the journal lock

# HTTP statuses in the 4xx range that are still worth retrying.
RETRYABLE_CLIENT_STATUSES = frozenset({401, 408, 429})

# ─── Zone defaults ───────────────────────────────────────────────
DEFAULT_WORK_START = "09:00"
DEFAULT_WORK_END = "18:00"
WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
DEFAULT_WORKING_DAYS = WEEKDAYS[:5]
MAX_UTC_OFFSET_MIN = 14 * 60    # UTC-12:00 .. UTC+14:00 covers every real zone
