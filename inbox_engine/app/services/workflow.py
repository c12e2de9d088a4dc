from __future__ import annotations

from inbox_engine.app.models import LeadAllocationStatus, TicketStatus

TICKET_TRANSITIONS = {
    TicketStatus.OPEN: {TicketStatus.PENDING, TicketStatus.ASSIGNED, TicketStatus.CLOSED},
    TicketStatus.PENDING: {TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.CLOSED},
    TicketStatus.ASSIGNED: {TicketStatus.OPEN, TicketStatus.PENDING, TicketStatus.CLOSED},
    TicketStatus.CLOSED: {TicketStatus.OPEN},
}

ALLOCATION_TRANSITIONS = {
    LeadAllocationStatus.allocated: {LeadAllocationStatus.contacted},
    LeadAllocationStatus.contacted: {LeadAllocationStatus.won, LeadAllocationStatus.lost},
    LeadAllocationStatus.won: set(),
    LeadAllocationStatus.lost: set(),
}
