from __future__ import annotations


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class MissingTicketError(Exception):
    """Raised when a message is created against a ticket that does not exist."""

    def __init__(self, tenant_id: str, ticket_id: str) -> None:
        super().__init__(f"ticket not found: tenant={tenant_id} ticket={ticket_id}")
        self.tenant_id = tenant_id
        self.ticket_id = ticket_id


class AllocationTargetError(ValueError):
    pass
