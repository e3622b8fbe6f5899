"""Shared constants for storage migration runs."""

# Exact, case-insensitive, normalized and stem matches carry fixed confidences;
# fuzzy matches carry their similarity score instead.
CONFIDENCE_EXACT = 1.0
CONFIDENCE_CASE_INSENSITIVE = 0.85
CONFIDENCE_NORMALIZED = 0.75
CONFIDENCE_STEM = 0.70

DEFAULT_FUZZY_THRESHOLD = 0.70
DEFAULT_LOW_CONFIDENCE_WARNING = 0.90

# Candidate pre-filter for fuzzy matching (length ratio window)
FUZZY_LENGTH_TOLERANCE = 0.3

DEFAULT_EXTENSION_FAMILIES: list[list[str]] = [
    ["jpg", "jpeg", "png"],
    ["gif"],
    ["webp"],
    ["svg"],
    ["tif", "tiff"],
]

DEFAULT_ORIGINALS_MARKERS: list[str] = ["originals"]

# Defaults mirrored from the migration config of the legacy tool
DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_WORKERS = 4
DEFAULT_CHECKPOINT_EVERY_BATCHES = 1
DEFAULT_CHANGELOG_FLUSH_EVERY = 5
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_MAX_REPEATED_ERRORS = 10
DEFAULT_ERROR_THRESHOLD = 50
DEFAULT_LOCK_TTL_SECONDS = 43200  # 12 hours
DEFAULT_CHECKPOINT_RETENTION_HOURS = 72
DEFAULT_VERIFICATION_SAMPLE_SIZE = 100

STATE_DB_FILENAME = "migration_state.db"
STAGING_PREFIX = "_staging"
QUARANTINE_PREFIX = "quarantine"

# Substrings of error messages that are never worth retrying
NON_RETRYABLE_PATTERNS = (
    "does not exist",
    "not found",
    "permission denied",
    "access denied",
    "invalid",
    "constraint violation",
)
