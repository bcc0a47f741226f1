"""Database layer for town storage.

Usage:
    from gastown.db import create_engine, init_town_db, session_factory

    engine = create_engine(settings.database_url(town_id))
    await init_town_db(engine)
    async with session_factory(engine)() as session:
        ...
"""

from gastown.db.connection import (
    SessionFactory,
    create_engine,
    init_agent_events_db,
    init_town_db,
    session_factory,
)
from gastown.db.models import (
    Agent,
    AgentEvent,
    AgentRole,
    AgentStatus,
    Bead,
    BeadDependency,
    BeadEvent,
    BeadEventType,
    BeadPriority,
    BeadStatus,
    BeadType,
    Convoy,
    ConvoyBead,
    ConvoyBeadStatus,
    ConvoyStatus,
    DependencyType,
    Escalation,
    EscalationSeverity,
    Mail,
    Molecule,
    MoleculeStatus,
    ReviewQueueEntry,
    ReviewStatus,
    Rig,
    RigConfig,
    TownSettingsRecord,
    TownState,
    utcnow_naive,
)

__all__ = [
    "Agent",
    "AgentEvent",
    "AgentRole",
    "AgentStatus",
    "Bead",
    "BeadDependency",
    "BeadEvent",
    "BeadEventType",
    "BeadPriority",
    "BeadStatus",
    "BeadType",
    "Convoy",
    "ConvoyBead",
    "ConvoyBeadStatus",
    "ConvoyStatus",
    "DependencyType",
    "Escalation",
    "EscalationSeverity",
    "Mail",
    "Molecule",
    "MoleculeStatus",
    "ReviewQueueEntry",
    "ReviewStatus",
    "Rig",
    "RigConfig",
    "SessionFactory",
    "TownSettingsRecord",
    "TownState",
    "create_engine",
    "init_agent_events_db",
    "init_town_db",
    "session_factory",
    "utcnow_naive",
]
