"""Constants used throughout the Waypoint codebase."""

# Retry schedule
BASE_DELAY_SECONDS = 30.0
CAP_DELAY_SECONDS = 3600.0
DEFAULT_MAX_ATTEMPTS = 5

# A job processing for longer than this is presumed abandoned by its worker
STUCK_THRESHOLD_SECONDS = 600.0
STUCK_JOB_MESSAGE = "job timed out (stuck in processing)"

# Leave a safety margin under a five-minute platform execution limit
DEFAULT_TIME_BUDGET_SECONDS = 240.0

# Observability windows
DEFAULT_STATS_WINDOW_HOURS = 24.0

DEFAULT_DB_PATH = "waypoint.db"

# SQLite connection settings
SQLITE_TIMEOUT_SECONDS = 5.0
SQLITE_BUSY_TIMEOUT_MS = 5000
