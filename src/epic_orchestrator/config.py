"""Configuration for the orchestration engine.

Defaults live on the model; a project can override any of them with
``.epicorch/config.json`` and the CLI can override individual fields.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigError
from .models import MergeMethod


DEFAULT_STATE_DIR = ".epicorch"
CONFIG_FILENAME = "config.json"


class OrchestratorConfig(BaseModel):
    """Configuration for the orchestrator."""

    # Polling cadence - staggered so timers don't fire together
    epic_poll_interval_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between epic reconciliation syncs"
    )
    session_poll_interval_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between worker session refreshes"
    )
    agent_poll_interval_seconds: float = Field(
        default=12.0,
        gt=0,
        description="Seconds between agent status refreshes"
    )

    # Completion handling
    auto_notify: bool = Field(
        default=True,
        description="Tell the tracker when a sub-issue completes"
    )
    auto_start_next_phase: bool = Field(
        default=False,
        description="Surface the next phase as ready to start once the previous one completes"
    )
    max_consecutive_sync_failures: Optional[int] = Field(
        default=None,
        ge=1,
        description="Stop monitoring after this many failed syncs in a row (None = retry forever)"
    )

    # Sessions
    session_prefix: str = Field(
        default="epicorch-agent-",
        description="Prefix for worker session names; only prefixed sessions are supervised"
    )
    default_agent_type: str = Field(default="claude")

    # Worktrees and pull requests
    use_worktrees: bool = Field(
        default=True,
        description="Give each assigned issue its own git worktree on an issue-N branch"
    )
    worktree_base: Optional[str] = Field(
        default=None,
        description="Directory for worktrees (default: <repo>-worktrees next to the repository)"
    )
    assigned_labels: list[str] = Field(
        default_factory=lambda: ["agent-assigned"],
        description="Labels added to a sub-issue when an agent is assigned"
    )
    pr_base_branch: str = Field(
        default="main",
        description="Base branch for pull requests opened from agent work"
    )

    # Merging
    default_merge_method: MergeMethod = Field(default=MergeMethod.SQUASH)
    delete_branch_on_merge: bool = Field(default=True)

    # Tracker conventions
    working_labels: list[str] = Field(
        default_factory=lambda: ["staging"],
        description="Issue labels meaning an agent is working on the issue"
    )

    # Pipeline
    pipeline_history_limit: int = Field(
        default=100,
        ge=0,
        description="Archived pipeline items to keep"
    )

    # Storage
    state_dir: str = Field(
        default=DEFAULT_STATE_DIR,
        description="Directory (relative to the project) holding state and logs"
    )
    event_log_rotation_kb: int = Field(
        default=1024,
        description="Rotate the event log when it exceeds this size in KB"
    )

    def session_name_for_issue(self, issue_number: int) -> str:
        return f"{self.session_prefix}{issue_number}"

    def branch_for_issue(self, issue_number: int) -> str:
        return f"issue-{issue_number}"

    def state_path(self, project_path: Path) -> Path:
        path = Path(self.state_dir)
        return path if path.is_absolute() else Path(project_path) / path


def load_config(project_path: Path, overrides: Optional[dict] = None) -> OrchestratorConfig:
    """Load configuration for a project.

    Args:
        project_path: Project directory; ``.epicorch/config.json`` is read if present
        overrides: Field values that take precedence over the file (None values ignored)

    Returns:
        The merged configuration

    Raises:
        ConfigError: If the file is not valid JSON or fails validation
    """
    config_file = Path(project_path) / DEFAULT_STATE_DIR / CONFIG_FILENAME
    data: dict = {}

    if config_file.exists():
        try:
            data = json.loads(config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")

    if overrides:
        data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return OrchestratorConfig.model_validate(data)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
