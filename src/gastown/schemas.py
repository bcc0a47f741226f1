"""Validated input payloads for orchestrator operations.

Store operations accept these models; ``parse_input`` turns pydantic failures
into ``gastown.errors.ValidationError`` so callers see one error taxonomy.
"""

from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from gastown.db.models import (
    AgentRole,
    BeadPriority,
    BeadStatus,
    BeadType,
    DependencyType,
    EscalationSeverity,
    ReviewStatus,
)
from gastown.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


def parse_input(model: type[M], data: dict[str, Any]) -> M:
    """Validate ``data`` against ``model`` or raise ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid {model.__name__}: {errors[0]['field']}: {errors[0]['message']}",
            details={"errors": errors},
        ) from e


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class CreateBeadInput(_Input):
    title: str = Field(min_length=1, max_length=500)
    type: BeadType = BeadType.TASK
    body: str | None = None
    rig_id: str | None = None
    parent_bead_id: str | None = None
    priority: BeadPriority = BeadPriority.MEDIUM
    labels: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None


class BeadFilter(_Input):
    status: BeadStatus | None = None
    type: BeadType | None = None
    rig_id: str | None = None
    assignee_id: str | None = None
    limit: int = Field(default=100, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class RegisterAgentInput(_Input):
    role: AgentRole
    name: str = Field(min_length=1, max_length=64)
    identity: str = Field(min_length=1, max_length=255)
    rig_id: str | None = None


class SendMailInput(_Input):
    from_agent_id: str = Field(min_length=1)
    to_agent_id: str = Field(min_length=1)
    subject: str = Field(min_length=1, max_length=255)
    body: str = ""


class SubmitReviewInput(_Input):
    agent_id: str = Field(min_length=1)
    bead_id: str = Field(min_length=1)
    branch: str = Field(min_length=1, max_length=255)
    summary: str | None = None
    pr_url: str | None = None


class CompleteReviewInput(_Input):
    entry_id: str = Field(min_length=1)
    status: str
    commit_sha: str | None = None
    message: str | None = None

    @field_validator("status")
    @classmethod
    def _known_outcome(cls, value: str) -> str:
        if value not in {ReviewStatus.MERGED, ReviewStatus.FAILED, "conflict"}:
            raise ValueError("status must be one of: merged, failed, conflict")
        return value


class AgentDoneInput(_Input):
    branch: str = Field(min_length=1, max_length=255)
    summary: str | None = None
    pr_url: str | None = None


class ConvoyBeadInput(_Input):
    bead_id: str = Field(min_length=1)
    rig_id: str | None = None


class CreateConvoyInput(_Input):
    title: str = Field(min_length=1, max_length=500)
    beads: list[ConvoyBeadInput] = Field(min_length=1)
    created_by: str | None = None


class RouteEscalationInput(_Input):
    message: str = Field(min_length=1)
    severity: EscalationSeverity = EscalationSeverity.LOW
    category: str | None = Field(default=None, max_length=64)
    source_rig_id: str | None = None
    source_agent_id: str | None = None


class AddRigInput(_Input):
    name: str = Field(min_length=1, max_length=255)
    git_url: str = Field(min_length=1, max_length=1024)
    default_branch: str = Field(default="main", min_length=1, max_length=255)


class ConfigureRigInput(_Input):
    user_id: str | None = None
    gateway_token: str | None = None
    git_token: str | None = None


class AddDependencyInput(_Input):
    bead_id: str = Field(min_length=1)
    depends_on_bead_id: str = Field(min_length=1)
    dependency_type: DependencyType = DependencyType.BLOCKS


class FormulaStep(_Input):
    title: str = Field(min_length=1, max_length=500)
    instructions: str = Field(min_length=1)


class MoleculeFormula(_Input):
    steps: list[FormulaStep] = Field(min_length=1)


class CreateMoleculeInput(_Input):
    bead_id: str = Field(min_length=1)
    formula: MoleculeFormula


class AdvanceMoleculeInput(_Input):
    summary: str = Field(min_length=1, max_length=5000)
