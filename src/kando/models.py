"""Pydantic data models for KanDo."""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, Field

# Fallback executor when the profiles endpoint is unavailable
DEFAULT_EXECUTOR = "CLAUDE_CODE"
DEFAULT_EXECUTOR_VARIANTS = ["DEFAULT", "PLAN", "APPROVALS"]


def format_error_message(context: str, error: BaseException | str) -> str:
    """Build a consistent "<context>: <message>" error string."""
    return f"{context}: {error}"


# --- Enums ---

class TaskStatus(str, Enum):
    NOT_SYNCED = "notsynced"
    TODO = "todo"
    IN_PROGRESS = "inprogress"
    IN_REVIEW = "inreview"
    DONE = "done"
    CANCELLED = "cancelled"
    DELETED = "deleted"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.DONE.value, TaskStatus.CANCELLED.value, TaskStatus.DELETED.value}
)

STATUS_LABELS = {
    TaskStatus.NOT_SYNCED: "Not synced",
    TaskStatus.TODO: "To Do",
    TaskStatus.IN_PROGRESS: "Executing...",
    TaskStatus.IN_REVIEW: "In Review",
    TaskStatus.DONE: "Done",
    TaskStatus.CANCELLED: "Cancelled",
    TaskStatus.DELETED: "Deleted",
}


def status_value(status: TaskStatus | str) -> str:
    """Plain string form of a status, whether given as enum or raw string."""
    if isinstance(status, TaskStatus):
        return status.value
    return str(status)


class CombinedState(NamedTuple):
    """Lifecycle phase plus whether an execution attempt is running.

    Compared structurally; this is the unit of change detection.
    """

    phase: str
    executing: bool

    def __str__(self) -> str:
        return f"{self.phase}:{str(self.executing).lower()}"

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_STATUSES


# --- Remote service models ---

class VKProject(BaseModel):
    id: str
    name: str
    git_repo_path: str = ""
    setup_script: Optional[str] = None
    dev_script: Optional[str] = None
    cleanup_script: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class VKTask(BaseModel):
    id: str
    project_id: str
    title: str = ""
    description: Optional[str] = None
    status: TaskStatus
    parent_task_attempt: Optional[str] = None
    shared_task_id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class VKTaskWithAttemptStatus(VKTask):
    has_in_progress_attempt: bool = False
    has_merged_attempt: bool = False
    last_attempt_failed: bool = False
    executor: Optional[str] = None

    @property
    def combined_state(self) -> CombinedState:
        return CombinedState(self.status.value, self.has_in_progress_attempt)


class VKTaskAttempt(BaseModel):
    id: str
    task_id: str
    container_ref: Optional[str] = None
    branch: str = ""
    target_branch: str = ""
    executor: str = ""
    worktree_deleted: bool = False
    setup_completed_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


class VKGitBranch(BaseModel):
    name: str
    is_current: bool = False
    is_remote: bool = False


# --- Request payloads ---

class CreateTaskPayload(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None


class UpdateTaskPayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None


class ExecutorProfileId(BaseModel):
    executor: str
    variant: Optional[str] = None


class CreateTaskAttemptPayload(BaseModel):
    task_id: str
    executor_profile_id: ExecutorProfileId
    base_branch: str


# --- Executor profiles ---

class VKExecutorOption(BaseModel):
    executor: str
    variants: list[str] = Field(default_factory=list)


def parse_executor_profiles(profiles: dict) -> list[VKExecutorOption]:
    """Flatten the profiles document into one option per executor."""
    executors = profiles.get("executors") or {}
    return [
        VKExecutorOption(executor=name, variants=list(variants or {}))
        for name, variants in executors.items()
    ]


# --- Card frontmatter ---

FRONTMATTER_FIELDS = (
    "title",
    "vk_project_name",
    "vk_project_id",
    "vk_task_id",
    "vk_status",
    "vk_last_synced",
    "vk_attempt_id",
    "vk_branch",
    "vk_pr_url",
    "vk_executor",
)


class CardFrontmatter(BaseModel):
    """KanDo-managed fields of a card's YAML header. Missing fields are None."""

    title: Optional[str] = None
    vk_project_name: Optional[str] = None
    vk_project_id: Optional[str] = None
    vk_task_id: Optional[str] = None
    vk_status: Optional[TaskStatus] = None
    vk_last_synced: Optional[str] = None
    vk_attempt_id: Optional[str] = None
    vk_branch: Optional[str] = None
    vk_pr_url: Optional[str] = None
    vk_executor: Optional[str] = None

    def updates(self) -> dict:
        """Only the fields that are set, as plain YAML-safe values."""
        return self.model_dump(exclude_none=True, mode="json")
