"""Default values shared across leadflow components."""

DEFAULT_SCHEDULER_INTERVAL_SECONDS = 30
DEFAULT_LEASE_SECONDS = 300
DEFAULT_BATCH_SIZE = 100
DEFAULT_PAGE_SIZE = 50

# Bounded retries when a step's result conflicts with a concurrent pause/resume.
MAX_COMMIT_ATTEMPTS = 5
