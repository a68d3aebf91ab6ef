"""Relational-store collaborators: tickets, messages, handoff records and role configs."""
import asyncio
import itertools
import json
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import structlog

from support_workflow.models import (
    AIRoleConfig,
    ChatMessage,
    HandoffRecord,
    Ticket,
    TicketStatus,
)

logger = structlog.get_logger(__name__)


class TicketRepository(Protocol):
    """The narrow query shapes the workflow engine needs from the ticket database."""

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    async def get_test_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    async def list_messages(self, ticket_id: str, is_test: bool = False) -> List[ChatMessage]:
        ...

    async def get_handoff_record(self, ticket_id: str) -> Optional[HandoffRecord]:
        ...

    async def create_handoff_record_if_absent(self, record: HandoffRecord) -> Tuple[HandoffRecord, bool]:
        ...

    async def mark_notification_sent(self, record_id: int) -> None:
        ...

    async def mark_notification_error(self, record_id: int, error: str) -> None:
        ...

    async def update_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        ...


class InMemoryTicketRepository:
    """Process-local repository; the API loads it from ``ticket_data_path``."""

    def __init__(
        self,
        tickets: Sequence[Ticket] = (),
        messages: Sequence[ChatMessage] = (),
        test_tickets: Sequence[Ticket] = (),
        test_messages: Sequence[ChatMessage] = (),
    ):
        self.tickets: Dict[str, Ticket] = {t.id: t for t in tickets}
        self.test_tickets: Dict[str, Ticket] = {t.id: t for t in test_tickets}
        self.messages: List[ChatMessage] = list(messages)
        self.test_messages: List[ChatMessage] = list(test_messages)
        self.handoff_records: Dict[str, HandoffRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryTicketRepository":
        """
        Load tickets and messages from a JSON file.

        The file holds ``{"tickets": [...], "messages": [...], "test_tickets": [...],
        "test_messages": [...]}``; a missing file yields an empty repository.
        """
        file_path = Path(path)
        if not file_path.exists():
            logger.warning("ticket_data_missing", path=str(file_path))
            return cls()
        raw = json.loads(file_path.read_text(encoding="utf-8"))
        repository = cls(
            tickets=[Ticket.model_validate(t) for t in raw.get("tickets", [])],
            messages=[ChatMessage.model_validate(m) for m in raw.get("messages", [])],
            test_tickets=[Ticket.model_validate(t) for t in raw.get("test_tickets", [])],
            test_messages=[ChatMessage.model_validate(m) for m in raw.get("test_messages", [])],
        )
        logger.info(
            "ticket_data_loaded",
            path=str(file_path),
            tickets=len(repository.tickets),
            messages=len(repository.messages),
        )
        return repository

    def add_ticket(self, ticket: Ticket, is_test: bool = False) -> None:
        (self.test_tickets if is_test else self.tickets)[ticket.id] = ticket

    def add_message(self, message: ChatMessage, is_test: bool = False) -> None:
        (self.test_messages if is_test else self.messages).append(message)

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self.tickets.get(ticket_id)

    async def get_test_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return self.test_tickets.get(ticket_id)

    async def list_messages(self, ticket_id: str, is_test: bool = False) -> List[ChatMessage]:
        """Visible messages of a ticket ordered by creation time."""
        source = self.test_messages if is_test else self.messages
        found = [
            m for m in source
            if m.ticket_id == ticket_id and not m.is_internal and not m.withdrawn
        ]
        return sorted(found, key=lambda m: (m.created_at, m.id))

    async def get_handoff_record(self, ticket_id: str) -> Optional[HandoffRecord]:
        return self.handoff_records.get(ticket_id)

    async def create_handoff_record_if_absent(self, record: HandoffRecord) -> Tuple[HandoffRecord, bool]:
        """
        Insert unless a record for the ticket exists.

        Returns:
            (stored record, True if this call created it)
        """
        async with self._lock:
            existing = self.handoff_records.get(record.ticket_id)
            if existing is not None:
                return existing, False
            stored = record.model_copy(update={"id": next(self._ids)})
            self.handoff_records[record.ticket_id] = stored
            return stored, True

    def _record_by_id(self, record_id: int) -> HandoffRecord:
        for record in self.handoff_records.values():
            if record.id == record_id:
                return record
        raise KeyError(f"handoff record {record_id} not found")

    async def mark_notification_sent(self, record_id: int) -> None:
        record = self._record_by_id(record_id)
        self.handoff_records[record.ticket_id] = record.model_copy(
            update={"notification_sent": True, "notification_error": None}
        )

    async def mark_notification_error(self, record_id: int, error: str) -> None:
        record = self._record_by_id(record_id)
        self.handoff_records[record.ticket_id] = record.model_copy(update={"notification_error": error})

    async def update_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            raise KeyError(f"ticket {ticket_id} not found")
        self.tickets[ticket_id] = ticket.model_copy(update={"status": status})


class RoleConfigSource(Protocol):
    async def list_active_role_configs(self) -> List[AIRoleConfig]:
        ...


class StaticRoleConfigSource:
    """Role configs held in memory."""

    def __init__(self, configs: Sequence[AIRoleConfig] = ()):
        self.configs = list(configs)

    async def list_active_role_configs(self) -> List[AIRoleConfig]:
        return [c for c in self.configs if c.is_active]


class JsonFileRoleConfigSource:
    """
    Role configs read from a JSON file.

    The file holds ``{"roles": [...], "workflows": [...]}``; a role either embeds
    its ``workflow`` or references one by ``workflowId``.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _load(self) -> List[AIRoleConfig]:
        if not self.path.exists():
            logger.warning("workflow_config_missing", path=str(self.path))
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        workflows = {str(w["id"]): w for w in raw.get("workflows", [])}
        configs = []
        for role in raw.get("roles", []):
            role = dict(role)
            workflow_id = role.get("workflowId") or role.get("workflow_id")
            if "workflow" not in role and workflow_id is not None:
                role["workflow"] = workflows.get(str(workflow_id))
            configs.append(AIRoleConfig.model_validate(role))
        return configs

    async def list_active_role_configs(self) -> List[AIRoleConfig]:
        configs = await asyncio.to_thread(self._load)
        return [c for c in configs if c.is_active]
