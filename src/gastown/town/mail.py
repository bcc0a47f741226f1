"""Agent-to-agent mail."""

from __future__ import annotations

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import Agent, BeadEventType, Mail, utcnow_naive
from gastown.errors import NotFoundError
from gastown.schemas import SendMailInput
from gastown.town.beads import BeadStore

log = structlog.get_logger()


class MailStore:
    """Mailboxes keyed by recipient agent id. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def send(self, data: SendMailInput) -> Mail:
        """Queue a message for ``to_agent_id``.

        The sender may be a role name (e.g. ``witness``) rather than an agent id.
        When the recipient holds a hook, the send is recorded on that bead.
        """
        recipient = await self.session.get(Agent, data.to_agent_id)
        if recipient is None:
            raise NotFoundError("Agent", data.to_agent_id)

        mail = Mail(
            from_agent_id=data.from_agent_id,
            to_agent_id=data.to_agent_id,
            subject=data.subject,
            body=data.body,
        )
        self.session.add(mail)

        if recipient.current_hook_bead_id:
            await BeadStore(self.session).log_event(
                recipient.current_hook_bead_id,
                BeadEventType.MAIL_SENT,
                agent_id=data.from_agent_id,
                new_value=data.to_agent_id,
                metadata={"subject": data.subject},
            )
        log.info(
            "mail_sent",
            mail_id=mail.id,
            from_agent_id=data.from_agent_id,
            to_agent_id=data.to_agent_id,
            subject=data.subject,
        )
        return mail

    async def check(self, agent_id: str) -> list[Mail]:
        """Return undelivered mail oldest first, marking it delivered."""
        result = await self.session.execute(
            select(Mail)
            .where(Mail.to_agent_id == agent_id)
            .where(col(Mail.delivered).is_(False))
            .order_by(col(Mail.created_at))
        )
        messages = list(result.scalars().all())
        now = utcnow_naive()
        for mail in messages:
            mail.delivered = True
            mail.delivered_at = now
            self.session.add(mail)
        return messages

    async def has_pending(self, agent_id: str, subject: str) -> bool:
        result = await self.session.execute(
            select(Mail.id)
            .where(Mail.to_agent_id == agent_id)
            .where(Mail.subject == subject)
            .where(col(Mail.delivered).is_(False))
            .limit(1)
        )
        return result.first() is not None
