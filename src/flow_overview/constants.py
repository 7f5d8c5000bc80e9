"""Centralized constants for the overview worker."""

# Worker state
DEFAULT_COOLDOWN_SECONDS = 900
MIN_COOLDOWN_SECONDS = 60

# Scheduling
DEFAULT_POLL_INTERVAL_SECONDS = 60
DEFAULT_UNIQUE_WINDOW_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 3

# Change detection
MAX_CHANGES_PER_KIND = 100
NEW_RECORD_WINDOW_SECONDS = 300

# Action execution
NOTIFICATION_DEDUP_WINDOW_SECONDS = 3600

# Analysis context
MAX_SUMMARY_ITEMS_PER_KIND = 10

# Health checks
HEALTH_CHECK_TIMEOUT = 5
