"""
Ticketing adapter.

Tickets belong to the support/ticketing system; this service is the narrow
``create(severity, payload)`` contract the rest of Archivist uses to open one.
The default implementation stores the ticket in the ``tickets`` table, which
the support tooling reads. Status changes after creation are made there.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from archivist.core.database.models import Ticket
from archivist.core.models import TicketSeverity, TicketStatus

logger = logging.getLogger("archivist.reliability.tickets")


class TicketService:
    async def create(
        self,
        session: AsyncSession,
        severity: TicketSeverity,
        payload: Dict[str, Any],
        subject: Optional[str] = None,
        tenant_id: Optional[UUID] = None,
    ) -> Ticket:
        """
        Open a support ticket.

        Args:
            session: Active session; the ticket is flushed but not committed
            severity: P0 / P1 / P2
            payload: Structured context (source type/id, tenant id, diagnostics)
            subject: One-line summary; derived from the payload when omitted
            tenant_id: Owning tenant, if any

        Returns:
            The new Ticket with its id assigned
        """
        if subject is None:
            subject = f"{payload.get('source_type', 'system')} {payload.get('source_id', '')}".strip()

        ticket = Ticket(
            severity=TicketSeverity(severity).value,
            status=TicketStatus.OPEN.value,
            tenant_id=tenant_id,
            subject=subject[:255],
            payload=payload,
            created_at=datetime.utcnow(),
        )
        session.add(ticket)
        await session.flush()

        logger.warning(f"Opened {ticket.severity} ticket {ticket.id}: {ticket.subject}")
        return ticket

    async def close(self, session: AsyncSession, ticket_id: UUID) -> Optional[Ticket]:
        """Mark a ticket closed (operator action)."""
        ticket = await session.get(Ticket, ticket_id)
        if ticket is None or ticket.is_closed:
            return ticket
        ticket.status = TicketStatus.CLOSED.value
        ticket.closed_at = datetime.utcnow()
        await session.flush()
        logger.info(f"Closed ticket {ticket.id}")
        return ticket


# Global service instance
ticket_service = TicketService()
