from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from warroom.constants import (
    COMPLETION_CHECK_INTERVAL_S,
    COMPLETION_COMMIT_WINDOW,
    COMPLETION_INACTIVITY_S,
    COMPLETION_MARKER_FILES,
    DEFAULT_RUNS_DIR,
    DEFAULT_WORKTREE_ROOT,
    FILE_ACTIVITY_DEBOUNCE_S,
    GIT_LOCAL_TIMEOUT_S,
    GIT_NETWORK_TIMEOUT_S,
    OUTPUT_DRAIN_TIMEOUT_S,
    OUTPUT_MAX_ERRORS,
    OUTPUT_MAX_LINES,
    OUTPUT_MAX_WARNINGS,
    RETRY_BASE_DELAY_S,
    RETRY_MAX_ATTEMPTS,
    RETRY_MAX_DELAY_S,
    STOP_GRACE_S,
    TERMINAL_POLL_INTERVAL_S,
)


class PathsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    runs_dir: str = DEFAULT_RUNS_DIR
    worktree_root: str = DEFAULT_WORKTREE_ROOT


class OrchestratorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    # "terminal" opens an automated terminal window; anything else spawns a child process.
    launch_mode: Literal["process", "terminal"] = "process"
    agent_command: str = "claude"
    skip_permissions_flag: str = "--dangerously-skip-permissions"
    terminal_poll_interval_s: float = Field(default=TERMINAL_POLL_INTERVAL_S, gt=0)
    stop_grace_s: float = Field(default=STOP_GRACE_S, ge=0)
    completion_check_interval_s: float = Field(default=COMPLETION_CHECK_INTERVAL_S, gt=0)
    output_drain_timeout_s: float = Field(default=OUTPUT_DRAIN_TIMEOUT_S, ge=0)
    auto_commit_on_complete: bool = True
    auto_merge_on_complete: bool = False


class TerminalConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    backend: Literal["auto", "tmux", "iterm", "terminal_app"] = "auto"
    tmux_binary: str = "tmux"


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = True
    max_attempts: int = Field(default=RETRY_MAX_ATTEMPTS, ge=0)
    base_delay_s: float = Field(default=RETRY_BASE_DELAY_S, ge=0)
    max_delay_s: float = Field(default=RETRY_MAX_DELAY_S, ge=0)

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryConfig":
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("'max_delay_s' must be >= 'base_delay_s'")
        return self


class CompletionConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    marker_files: List[str] = list(COMPLETION_MARKER_FILES)
    inactivity_threshold_s: float = Field(default=COMPLETION_INACTIVITY_S, gt=0)
    commit_subject_window: int = Field(default=COMPLETION_COMMIT_WINDOW, ge=1)
    # Record worktree file changes as lane activity for the inactivity signal.
    watch_worktrees: bool = True
    file_activity_debounce_s: float = Field(default=FILE_ACTIVITY_DEBOUNCE_S, gt=0)


class RiskThresholds(BaseModel):
    """Overlapping-lane counts at which conflict risk escalates.

    A lane with no overlap is "none"; up to ``low`` overlaps is "low", up to
    ``medium`` is "medium", anything above is "high".
    """

    model_config = ConfigDict(extra="allow")
    low: int = Field(default=1, ge=1)
    medium: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def validate_order(self) -> "RiskThresholds":
        if self.medium < self.low:
            raise ValueError("'medium' threshold must be >= 'low' threshold")
        return self


class MergeConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    default_method: Literal["merge", "squash", "cherry-pick"] = "merge"
    risk_thresholds: RiskThresholds = RiskThresholds()


class GitConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    binary: str = "git"
    remote: str = "origin"
    local_timeout_s: float = Field(default=GIT_LOCAL_TIMEOUT_S, gt=0)
    network_timeout_s: float = Field(default=GIT_NETWORK_TIMEOUT_S, gt=0)


class OutputConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_lines: int = Field(default=OUTPUT_MAX_LINES, ge=1)
    max_errors: int = Field(default=OUTPUT_MAX_ERRORS, ge=1)
    max_warnings: int = Field(default=OUTPUT_MAX_WARNINGS, ge=1)


class WarroomConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    paths: PathsConfig = PathsConfig()
    orchestrator: OrchestratorConfig = OrchestratorConfig()
    terminal: TerminalConfig = TerminalConfig()
    retry: RetryConfig = RetryConfig()
    completion: CompletionConfig = CompletionConfig()
    merge: MergeConfig = MergeConfig()
    git: GitConfig = GitConfig()
    output: OutputConfig = OutputConfig()
    log_level: Optional[str] = None
