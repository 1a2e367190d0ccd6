"""Project-wide constants that are not worth a settings knob."""

# Slack request signing ------------------------------------------------------
SLACK_SIGNATURE_VERSION = "v0"
SLACK_TIMESTAMP_TOLERANCE_S = 300  # replay window

# Ingress de-duplication -----------------------------------------------------
DEDUP_CLEAR_INTERVAL_S = 300

# Dispatch -------------------------------------------------------------------
AGENT_QUEUE_NAME = "agent-jobs"

# Job titles are the first N characters of the message
JOB_TITLE_MAX_CHARS = 100

# HTTP route prefixes ----------------------------------------------------------
API_PREFIX = "/api"
