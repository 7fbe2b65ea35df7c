"""
Build escalation - opens at most one support ticket per BuildJob.

Called by the build controller after a failure has been recorded. The job row
is locked and re-read before deciding, so two attempts finishing at the same
time cannot both see "no ticket yet" and open two tickets.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from archivist.core.database.models import BuildJob, Ticket
from archivist.core.models import TicketSeverity
from archivist.core.reliability.escalation_policy import EscalationPolicy, escalation_policy
from archivist.core.reliability.ticket_service import TicketService, ticket_service

logger = logging.getLogger("archivist.archives.escalation")

SOURCE_TYPE = "archive_build"


class ArchiveEscalationService:
    def __init__(
        self,
        policy: Optional[EscalationPolicy] = None,
        tickets: Optional[TicketService] = None,
    ):
        self.policy = policy or escalation_policy
        self.tickets = tickets or ticket_service

    async def create_ticket_if_needed(self, session: AsyncSession, job: BuildJob) -> Optional[Ticket]:
        """
        Open a ticket for ``job`` when the policy asks for one.

        Returns:
            The new Ticket, or None if no ticket was needed or one already exists
        """
        locked = (
            await session.execute(
                select(BuildJob)
                .where(BuildJob.id == job.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        if locked.escalation_ticket_id is not None:
            logger.debug(f"Build {locked.id} already escalated to ticket {locked.escalation_ticket_id}")
            return None

        decision = self.policy.decide_for_build(locked)
        if not decision.open_ticket:
            return None

        ticket = await self.tickets.create(
            session,
            TicketSeverity.P1,
            self.build_ticket_payload(locked),
            subject=f"Archive build {locked.id} failed {locked.failure_count} times",
            tenant_id=locked.tenant_id,
        )
        locked.escalation_ticket_id = ticket.id
        await session.flush()

        logger.warning(
            f"Escalated build {locked.id} to ticket {ticket.id} "
            f"(failures={locked.failure_count}, reason={locked.failure_reason})"
        )
        return ticket

    @staticmethod
    def build_ticket_payload(job: BuildJob) -> dict:
        return {
            "source_type": SOURCE_TYPE,
            "source_id": str(job.id),
            "tenant_id": str(job.tenant_id),
            "request_id": job.request_id,
            "failure_count": job.failure_count,
            "failure_reason": job.failure_reason,
            "last_failed_at": job.last_failed_at.isoformat() if job.last_failed_at else None,
            "chunk_index": job.chunk_index,
            "total_objects": job.total_objects,
        }


# Global service instance
archive_escalation_service = ArchiveEscalationService()
