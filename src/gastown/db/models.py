"""SQLModel schemas for town storage.

Each town owns one relational namespace holding:
- Beads (work items), their event log, dependencies and molecules
- Agents, mail and the review queue
- Convoys, escalations, rigs and rig config
- Town state (next alarm) and the serialized town config

Agent activity logs live in a separate namespace per agent (AgentEvent).
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Index, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================


class BeadType(StrEnum):
    """Kinds of work item."""

    TASK = "task"
    MESSAGE = "message"
    AGENT = "agent"


class BeadStatus(StrEnum):
    """Work item status. CLOSED and FAILED are terminal."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_BEAD_STATUSES = {BeadStatus.CLOSED, BeadStatus.FAILED}


class BeadPriority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DependencyType(StrEnum):
    """How one bead relates to another it depends on."""

    BLOCKS = "blocks"
    TRACKS = "tracks"
    PARENT_CHILD = "parent-child"


class MoleculeStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


class BeadEventType(StrEnum):
    """Audit events recorded against a bead."""

    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    HOOKED = "hooked"
    UNHOOKED = "unhooked"
    MAIL_SENT = "mail_sent"
    REVIEW_SUBMITTED = "review_submitted"
    REVIEW_COMPLETED = "review_completed"
    ESCALATED = "escalated"
    DEPENDENCY_ADDED = "dependency_added"
    MOLECULE_STEP_COMPLETED = "molecule_step_completed"


class AgentRole(StrEnum):
    """Agent roles. Everything except POLECAT is a town singleton."""

    MAYOR = "mayor"
    POLECAT = "polecat"
    REFINERY = "refinery"
    WITNESS = "witness"


SINGLETON_ROLES = {AgentRole.MAYOR, AgentRole.REFINERY, AgentRole.WITNESS}


class AgentStatus(StrEnum):
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    EXITED = "exited"
    FAILED = "failed"


LIVE_AGENT_STATUSES = {AgentStatus.WORKING, AgentStatus.BLOCKED}


class ReviewStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    MERGED = "merged"
    FAILED = "failed"


class ConvoyStatus(StrEnum):
    ACTIVE = "active"
    LANDED = "landed"


class ConvoyBeadStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class EscalationSeverity(StrEnum):
    """Escalation severity, ordered from least to most urgent."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_ORDER = [
    EscalationSeverity.LOW,
    EscalationSeverity.MEDIUM,
    EscalationSeverity.HIGH,
    EscalationSeverity.CRITICAL,
]


# =============================================================================
# Base Model
# =============================================================================


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was created",
        sa_type=DateTime,
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was last updated",
        sa_type=DateTime,
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# Beads - units of work
# =============================================================================


class Bead(TimestampMixin, table=True):
    """A unit of work tracked by the town."""

    __tablename__ = "beads"
    __table_args__ = (
        Index("ix_beads_status_type", "status", "type"),
        Index("ix_beads_rig_created", "rig_id", "created_at"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    type: str = Field(default=BeadType.TASK.value, max_length=16)
    status: str = Field(default=BeadStatus.OPEN.value, max_length=16, index=True)
    title: str = Field(max_length=500)
    body: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rig_id: str | None = Field(default=None, max_length=36, index=True)
    parent_bead_id: str | None = Field(
        default=None, max_length=36, index=True, description="Parent bead, e.g. for molecule steps"
    )
    assignee_id: str | None = Field(
        default=None,
        foreign_key="agents.id",
        max_length=36,
        index=True,
        description="Agent responsible for this bead",
    )
    priority: str = Field(default=BeadPriority.MEDIUM.value, max_length=16)
    labels: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    meta: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
        description="Open key/value bag",
    )
    created_by: str | None = Field(default=None, max_length=255)
    closed_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))

    def __repr__(self) -> str:
        return f"<Bead id={self.id} status={self.status} title={self.title!r}>"


class BeadEvent(SQLModel, table=True):
    """Append-only audit record for a bead."""

    __tablename__ = "bead_events"
    __table_args__ = (Index("ix_bead_events_bead_created", "bead_id", "created_at"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    bead_id: str = Field(max_length=36)
    agent_id: str | None = Field(default=None, max_length=36)
    event_type: str = Field(max_length=32)
    old_value: str | None = Field(default=None, max_length=255)
    new_value: str | None = Field(default=None, max_length=255)
    meta: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


class BeadDependency(SQLModel, table=True):
    """Typed edge from a bead to a bead it depends on. One edge per pair."""

    __tablename__ = "bead_dependencies"

    bead_id: str = Field(primary_key=True, max_length=36)
    depends_on_bead_id: str = Field(primary_key=True, max_length=36, index=True)
    dependency_type: str = Field(default=DependencyType.BLOCKS.value, max_length=16)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


class Molecule(SQLModel, table=True):
    """Multi-step formula attached to a bead and walked one step at a time."""

    __tablename__ = "molecules"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    bead_id: str = Field(max_length=36, sa_column_kwargs={"unique": True})
    formula: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    current_step: int = Field(default=0)
    status: str = Field(default=MoleculeStatus.ACTIVE.value, max_length=16)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


# =============================================================================
# Agents
# =============================================================================


class Agent(TimestampMixin, table=True):
    """A role-typed actor that works on at most one hooked bead."""

    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("identity", name="uq_agents_identity"),
        Index("ix_agents_role_status", "role", "status"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    role: str = Field(max_length=16)
    name: str = Field(max_length=64)
    identity: str = Field(max_length=255, description="Stable external handle")
    rig_id: str | None = Field(default=None, max_length=36, index=True)
    status: str = Field(default=AgentStatus.IDLE.value, max_length=16)
    current_hook_bead_id: str | None = Field(default=None, max_length=36, index=True)
    dispatch_attempts: int = Field(default=0)
    checkpoint: Any | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    last_activity_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime, nullable=True)
    )

    def __repr__(self) -> str:
        return f"<Agent id={self.id} identity={self.identity} status={self.status}>"


class Mail(SQLModel, table=True):
    """Directed message between two agents, delivered exactly once."""

    __tablename__ = "mail"
    __table_args__ = (Index("ix_mail_recipient_delivered", "to_agent_id", "delivered"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    from_agent_id: str = Field(max_length=64)
    to_agent_id: str = Field(max_length=36)
    subject: str = Field(max_length=255)
    body: str = Field(default="", sa_column=Column(Text, nullable=False))
    delivered: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))


# =============================================================================
# Review queue
# =============================================================================


class ReviewQueueEntry(SQLModel, table=True):
    """Finished work waiting for quality gates or a merge."""

    __tablename__ = "review_queue"
    __table_args__ = (Index("ix_review_queue_status_created", "status", "created_at"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    agent_id: str = Field(max_length=36)
    bead_id: str = Field(max_length=36, index=True)
    branch: str = Field(max_length=255)
    pr_url: str | None = Field(default=None, max_length=1024)
    status: str = Field(default=ReviewStatus.PENDING.value, max_length=16)
    summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    commit_sha: str | None = Field(default=None, max_length=64)
    message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))


# =============================================================================
# Convoys
# =============================================================================


class Convoy(SQLModel, table=True):
    """A group of beads tracked for joint completion."""

    __tablename__ = "convoys"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    title: str = Field(max_length=500)
    status: str = Field(default=ConvoyStatus.ACTIVE.value, max_length=16)
    total_beads: int = Field(default=0)
    closed_beads: int = Field(default=0)
    created_by: str | None = Field(default=None, max_length=255)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    landed_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))


class ConvoyBead(SQLModel, table=True):
    """Membership of a bead in a convoy."""

    __tablename__ = "convoy_beads"

    convoy_id: str = Field(foreign_key="convoys.id", primary_key=True, max_length=36)
    bead_id: str = Field(primary_key=True, max_length=36, index=True)
    rig_id: str | None = Field(default=None, max_length=36)
    status: str = Field(default=ConvoyBeadStatus.OPEN.value, max_length=16)


# =============================================================================
# Escalations
# =============================================================================


class Escalation(SQLModel, table=True):
    """Severity-graded operational alert routed to the mayor."""

    __tablename__ = "escalations"
    __table_args__ = (Index("ix_escalations_ack_created", "acknowledged", "created_at"),)

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    source_rig_id: str | None = Field(default=None, max_length=36)
    source_agent_id: str | None = Field(default=None, max_length=36)
    severity: str = Field(default=EscalationSeverity.LOW.value, max_length=16)
    category: str | None = Field(default=None, max_length=64)
    message: str = Field(sa_column=Column(Text, nullable=False))
    acknowledged: bool = Field(default=False)
    re_escalation_count: int = Field(default=0)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )
    acknowledged_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime, nullable=True)
    )


# =============================================================================
# Rigs
# =============================================================================


class Rig(SQLModel, table=True):
    """A git repository registered under the town. Safe to enumerate."""

    __tablename__ = "rigs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    name: str = Field(max_length=255, sa_column_kwargs={"unique": True})
    git_url: str = Field(max_length=1024)
    default_branch: str = Field(default="main", max_length=255)
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


class RigConfig(SQLModel, table=True):
    """Credentials for a rig. Never included in rig listings."""

    __tablename__ = "rig_configs"

    rig_id: str = Field(foreign_key="rigs.id", primary_key=True, max_length=36)
    user_id: str | None = Field(default=None, max_length=255)
    gateway_token: str | None = Field(default=None, sa_column=Column(String(1024), nullable=True))
    git_token: str | None = Field(default=None, sa_column=Column(String(1024), nullable=True))
    updated_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


# =============================================================================
# Town state
# =============================================================================


class TownState(SQLModel, table=True):
    """Scheduler bookkeeping. Single row keyed by id=1."""

    __tablename__ = "town_state"

    id: int = Field(default=1, primary_key=True)
    next_alarm_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))
    last_tick_at: datetime | None = Field(default=None, sa_column=Column(DateTime, nullable=True))
    tick_count: int = Field(default=0)


class TownSettingsRecord(SQLModel, table=True):
    """Serialized TownConfig. Single row keyed by id=1."""

    __tablename__ = "town_settings"

    id: int = Field(default=1, primary_key=True)
    config: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    updated_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


# =============================================================================
# Agent activity log (per-agent namespace)
# =============================================================================


class AgentEvent(SQLModel, table=True):
    """One entry of an agent's activity stream."""

    __tablename__ = "agent_events"

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(max_length=64)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(
        default_factory=utcnow_naive, sa_column=Column(DateTime, nullable=False)
    )


TOWN_TABLES = [
    Agent.__table__,
    Bead.__table__,
    BeadEvent.__table__,
    BeadDependency.__table__,
    Molecule.__table__,
    Mail.__table__,
    ReviewQueueEntry.__table__,
    Convoy.__table__,
    ConvoyBead.__table__,
    Escalation.__table__,
    Rig.__table__,
    RigConfig.__table__,
    TownState.__table__,
    TownSettingsRecord.__table__,
]

AGENT_EVENT_TABLES = [AgentEvent.__table__]
