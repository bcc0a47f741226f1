"""Molecules: ordered step formulas an agent walks through on its hooked bead."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from gastown.db.models import (
    Agent,
    BeadEventType,
    Molecule,
    MoleculeStatus,
    utcnow_naive,
)
from gastown.errors import ConflictError, NotFoundError
from gastown.schemas import CreateMoleculeInput, FormulaStep, MoleculeFormula
from gastown.town.beads import BeadStore

log = structlog.get_logger()


@dataclass
class MoleculeStep:
    """The step an agent should work on next."""

    molecule_id: str
    current_step: int
    total_steps: int
    step: FormulaStep
    status: str


@dataclass
class MoleculeAdvance:
    molecule_id: str
    previous_step: int
    current_step: int
    total_steps: int
    completed: bool


class MoleculeStore:
    """One molecule per bead. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.beads = BeadStore(session)

    async def create(self, data: CreateMoleculeInput) -> Molecule:
        await self.beads.require(data.bead_id)
        if await self.for_bead(data.bead_id) is not None:
            raise ConflictError(
                f"Bead {data.bead_id} already has a molecule", details={"bead_id": data.bead_id}
            )
        molecule = Molecule(bead_id=data.bead_id, formula=data.formula.model_dump())
        self.session.add(molecule)
        log.info(
            "molecule_created",
            molecule_id=molecule.id,
            bead_id=data.bead_id,
            steps=len(data.formula.steps),
        )
        return molecule

    async def get(self, molecule_id: str) -> Molecule | None:
        return await self.session.get(Molecule, molecule_id)

    async def for_bead(self, bead_id: str) -> Molecule | None:
        result = await self.session.execute(select(Molecule).where(Molecule.bead_id == bead_id))
        return result.scalar_one_or_none()

    async def _hooked_molecule(self, agent_id: str) -> tuple[Agent, Molecule | None]:
        agent = await self.session.get(Agent, agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        if agent.current_hook_bead_id is None:
            return agent, None
        return agent, await self.for_bead(agent.current_hook_bead_id)

    async def current_step(self, agent_id: str) -> MoleculeStep | None:
        """Step for the agent's hooked bead, or None when there is nothing left to do."""
        _, molecule = await self._hooked_molecule(agent_id)
        if molecule is None:
            return None
        formula = MoleculeFormula.model_validate(molecule.formula)
        if molecule.current_step >= len(formula.steps):
            return None
        return MoleculeStep(
            molecule_id=molecule.id,
            current_step=molecule.current_step,
            total_steps=len(formula.steps),
            step=formula.steps[molecule.current_step],
            status=molecule.status,
        )

    async def advance(self, agent_id: str, summary: str) -> MoleculeAdvance:
        """Mark the current step done. Finishing the last step completes the molecule."""
        agent, molecule = await self._hooked_molecule(agent_id)
        if agent.current_hook_bead_id is None:
            raise ConflictError(
                f"Agent {agent_id} has no hooked bead", details={"agent_id": agent_id}
            )
        if molecule is None:
            raise NotFoundError("Molecule", agent.current_hook_bead_id)
        if molecule.status != MoleculeStatus.ACTIVE:
            raise ConflictError(
                f"Molecule {molecule.id} is {molecule.status}, cannot advance",
                details={"molecule_id": molecule.id, "status": molecule.status},
            )

        formula = MoleculeFormula.model_validate(molecule.formula)
        previous = molecule.current_step
        molecule.current_step = previous + 1
        completed = molecule.current_step >= len(formula.steps)
        if completed:
            molecule.status = MoleculeStatus.COMPLETED.value
        molecule.updated_at = utcnow_naive()
        self.session.add(molecule)

        await self.beads.log_event(
            molecule.bead_id,
            BeadEventType.MOLECULE_STEP_COMPLETED,
            agent_id=agent_id,
            old_value=str(previous),
            new_value=str(molecule.current_step),
            metadata={"step_title": formula.steps[previous].title, "summary": summary},
        )
        log.info(
            "molecule_step_advanced",
            molecule_id=molecule.id,
            step=molecule.current_step,
            total_steps=len(formula.steps),
            completed=completed,
        )
        return MoleculeAdvance(
            molecule_id=molecule.id,
            previous_step=previous,
            current_step=molecule.current_step,
            total_steps=len(formula.steps),
            completed=completed,
        )
