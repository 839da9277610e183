"""Constants used across Warroom.

This module defines shared constants to ensure consistency.
"""

# Environment overrides
ENV_CONFIG_PATH = "WARROOM_CONFIG"
ENV_LOG_LEVEL = "WARROOM_LOG_LEVEL"
ENV_ENV_PATH = "WARROOM_ENV_PATH"

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_CONFIG_PATH = "~/.warroom/warroom.yml"
DEFAULT_RUNS_DIR = "~/.openclaw/workspace/warroom/runs"
DEFAULT_WORKTREE_ROOT = "~/Desktop/worktrees"

# Run artifacts
PLAN_FILENAME = "plan.json"
STATUS_FILENAME = "status.json"
HISTORY_FILENAME = "history.jsonl"
MERGE_PROPOSAL_FILENAME = "merge-proposal.json"
LANE_STATUS_FILENAME = "LANE_STATUS.json"

# Env vars exported to every lane's agent process
LANE_ID_ENV = "WARROOM_LANE_ID"
RUN_SLUG_ENV = "WARROOM_RUN_SLUG"

# Scheduler timing (seconds)
TERMINAL_POLL_INTERVAL_S = 5.0
STOP_GRACE_S = 5.0
COMPLETION_CHECK_INTERVAL_S = 30.0
# Output still buffered after a lane process exits is drained for at most this long
OUTPUT_DRAIN_TIMEOUT_S = 2.0
PROCESS_EXIT_POLL_S = 0.2

# Git timeouts (seconds)
GIT_LOCAL_TIMEOUT_S = 30.0
GIT_NETWORK_TIMEOUT_S = 60.0
GIT_NETWORK_COMMANDS = frozenset({"push", "fetch", "pull", "ls-remote", "clone"})

# Retry policy
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_S = 30.0
RETRY_MAX_DELAY_S = 600.0

# Completion detection
COMPLETION_MARKER_FILES = ("REVIEW.md", "FINDINGS.md")
COMPLETION_INACTIVITY_S = 5 * 60
COMPLETION_COMMIT_WINDOW = 5
LANE_STATUS_COMPLETE_PHASES = frozenset({"complete", "completed", "completing", "done", "finished"})
FILE_ACTIVITY_DEBOUNCE_S = 1.0
FILE_ACTIVITY_IGNORED_DIRS = frozenset({".git", "node_modules", ".next", "__pycache__"})
FILE_ACTIVITY_IGNORED_SUFFIXES = (".swp", ".tmp", "~", ".DS_Store")

# Output ingestion bounds
OUTPUT_MAX_LINES = 1000
OUTPUT_MAX_ERRORS = 50
OUTPUT_MAX_WARNINGS = 50

# Merge ordering: lower merges first
ROLE_MERGE_PRIORITY: dict[str, int] = {
    "product-owner": 0,
    "architect": 1,
    "developer": 2,
    "staff-engineer-reviewer": 3,
    "qa-tester": 4,
    "security-reviewer": 5,
    "visual-qa": 6,
    "techdebt": 7,
    "doc-updater": 8,
}
UNKNOWN_ROLE_PRIORITY = 5

PROTECTED_MAIN_BRANCHES = frozenset({"main", "master", "production", "prod", "release"})
