"""
Domain models for the automation engine.

Steps are a tagged union on ``type``. Stored workflows use camelCase keys
(``outputAs``, ``itemAs``, ``returnValue``), so every model accepts both the
alias and the Python field name.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerType(str, Enum):
    """Sources that can start a workflow run."""

    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    TELEGRAM = "telegram"
    DISCORD = "discord"
    CHAT = "chat"
    CHAT_INPUT = "chat-input"
    GMAIL = "gmail"
    OUTLOOK = "outlook"


# Triggers the scheduler leader polls for new items
POLLING_TRIGGERS = frozenset({TriggerType.GMAIL, TriggerType.OUTLOOK})


class WorkflowStatus(str, Enum):
    """Lifecycle status of a stored workflow."""

    ACTIVE = "active"
    PAUSED = "paused"
    DRAFT = "draft"


class OrganizationStatus(str, Enum):
    """Denormalized status of the owning organization."""

    ACTIVE = "active"
    INACTIVE = "inactive"


def _normalize_steps(value: Any) -> Any:
    """Legacy steps saved without a ``type`` are actions."""
    if not isinstance(value, list):
        return value
    normalized = []
    for item in value:
        if isinstance(item, dict) and "type" not in item:
            item = {**item, "type": "action"}
        normalized.append(item)
    return normalized


# ==================== Steps ====================


class StepBase(BaseModel):
    """Fields shared by every step type."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, max_length=255, description="Unique step identifier")


class ActionStep(StepBase):
    """Invoke a module function with templated inputs."""

    type: Literal["action"] = "action"
    module: str = Field(..., min_length=1, description="category.module.function")
    inputs: dict[str, Any] = Field(default_factory=dict, description="Templated inputs")
    output_as: Optional[str] = Field(
        default=None,
        alias="outputAs",
        description="Variable that receives the module result",
    )


class ConditionStep(StepBase):
    """Branch on a boolean expression."""

    type: Literal["condition"] = "condition"
    condition: str = Field(..., min_length=1)
    then_steps: list["Step"] = Field(default_factory=list, alias="then")
    else_steps: list["Step"] = Field(default_factory=list, alias="else")

    @field_validator("then_steps", "else_steps", mode="before")
    @classmethod
    def normalize_branches(cls, v: Any) -> Any:
        return _normalize_steps(v)


class ForEachStep(StepBase):
    """Run a body once per element of an array variable."""

    type: Literal["forEach"] = "forEach"
    array: str = Field(..., min_length=1, description="Whole {{path}} token resolving to a list")
    item_as: str = Field(default="item", alias="itemAs")
    index_as: Optional[str] = Field(default=None, alias="indexAs")
    steps: list["Step"] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def normalize_body(cls, v: Any) -> Any:
        return _normalize_steps(v)


class WhileStep(StepBase):
    """Repeat a body while a condition holds."""

    type: Literal["while"] = "while"
    condition: str = Field(..., min_length=1)
    max_iterations: Optional[int] = Field(default=None, ge=1, alias="maxIterations")
    steps: list["Step"] = Field(default_factory=list)

    @field_validator("steps", mode="before")
    @classmethod
    def normalize_body(cls, v: Any) -> Any:
        return _normalize_steps(v)


Step = Annotated[
    Union[ActionStep, ConditionStep, ForEachStep, WhileStep],
    Field(discriminator="type"),
]

ConditionStep.model_rebuild()
ForEachStep.model_rebuild()
WhileStep.model_rebuild()


def child_steps(step: Any) -> list[Any]:
    """Nested steps of a container step (empty for actions)."""
    if isinstance(step, ConditionStep):
        return [*step.then_steps, *step.else_steps]
    if isinstance(step, (ForEachStep, WhileStep)):
        return list(step.steps)
    return []


def iter_steps(steps: list[Any]):
    """Depth-first walk over steps and all of their nested steps."""
    for step in steps:
        yield step
        yield from iter_steps(child_steps(step))


# ==================== Workflows ====================


class TriggerSpec(BaseModel):
    """
    How a workflow is started.

    Cron triggers keep the pattern in config.schedule; polling triggers keep
    their filters in config.filters and the interval (seconds) in
    config.pollInterval.
    """

    model_config = ConfigDict(extra="allow")

    type: TriggerType = Field(default=TriggerType.MANUAL)
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def schedule(self) -> Optional[str]:
        value = self.config.get("schedule")
        return value if isinstance(value, str) and value.strip() else None

    @property
    def poll_interval(self) -> Optional[float]:
        value = self.config.get("pollInterval")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            return None
        return float(value)

    @property
    def filters(self) -> dict[str, Any]:
        value = self.config.get("filters")
        return value if isinstance(value, dict) else {}


class WorkflowConfig(BaseModel):
    """Executable part of a workflow: steps plus output declaration."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    steps: list[Step] = Field(default_factory=list)
    return_value: Optional[Any] = Field(default=None, alias="returnValue")
    output_display: Optional[dict[str, Any]] = Field(default=None, alias="outputDisplay")

    @field_validator("steps", mode="before")
    @classmethod
    def normalize_steps(cls, v: Any) -> Any:
        return _normalize_steps(v)

    @model_validator(mode="after")
    def validate_unique_step_ids(self) -> "WorkflowConfig":
        """Step ids are unique across the whole tree, nested steps included."""
        seen: set[str] = set()
        duplicates: set[str] = set()
        for step in iter_steps(self.steps):
            if step.id in seen:
                duplicates.add(step.id)
            seen.add(step.id)
        if duplicates:
            raise ValueError(f"Duplicate step IDs found: {sorted(duplicates)}")
        return self


class WorkflowDefinition(WorkflowConfig):
    """A stored workflow together with its ownership and run aggregates."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(default="Untitled workflow", max_length=255)
    user_id: str = Field(..., alias="userId")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    organization_status: Optional[OrganizationStatus] = Field(
        default=None, alias="organizationStatus"
    )
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)

    # Run aggregates, maintained by the run ledger
    last_run: Optional[datetime] = Field(default=None, alias="lastRun")
    last_run_status: Optional[str] = Field(default=None, alias="lastRunStatus")
    last_run_error: Optional[str] = Field(default=None, alias="lastRunError")
    run_count: int = Field(default=0, ge=0, alias="runCount")

    @property
    def is_cron(self) -> bool:
        return self.trigger.type == TriggerType.CRON

    @property
    def is_polling(self) -> bool:
        return self.trigger.type in POLLING_TRIGGERS

    @property
    def organization_inactive(self) -> bool:
        return (
            self.organization_id is not None
            and self.organization_status == OrganizationStatus.INACTIVE
        )


# ==================== Runs and results ====================


class WorkflowRun(BaseModel):
    """Durable record of one workflow execution."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    user_id: str
    organization_id: Optional[str] = None
    trigger_type: str = TriggerType.MANUAL.value
    trigger_data: Optional[dict[str, Any]] = None
    status: str = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, ge=0, description="Milliseconds")
    output: Optional[Any] = None
    error: Optional[str] = None
    error_step: Optional[str] = None


class ExecutionResult(BaseModel):
    """Outcome returned by every execution entry point."""

    success: bool
    output: Optional[Any] = None
    error: Optional[str] = None
    error_step: Optional[str] = None
    run_id: Optional[str] = None


class QueueJob(BaseModel):
    """Payload of one queued workflow execution."""

    workflow_id: str
    user_id: str
    organization_id: Optional[str] = None
    trigger_type: str = TriggerType.MANUAL.value
    trigger_data: Optional[dict[str, Any]] = None


class EnqueueResult(BaseModel):
    """Where a trigger ended up: on a partition, or executed directly."""

    job_id: str
    queued: bool
    result: Optional[ExecutionResult] = None
