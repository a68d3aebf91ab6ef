"""Handoff notifications: fire-and-forget dispatch to human-agent channels."""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Set

import httpx
import structlog

from support_workflow.config import Settings, get_settings
from support_workflow.content import extract_text_without_images
from support_workflow.models import HandoffRecord, Ticket
from support_workflow.repository import TicketRepository

logger = structlog.get_logger(__name__)

PRIORITY_THEMES = {
    "urgent": "red",
    "high": "red",
    "medium": "orange",
    "low": "indigo",
}


class NotificationChannel(Protocol):
    async def send(self, record: HandoffRecord, ticket: Ticket) -> None:
        ...


class FeishuWebhookChannel:
    """Posts an interactive card to a Feishu custom-bot webhook."""

    def __init__(self, webhook_url: Optional[str], app_url: str, client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self.app_url = app_url.rstrip("/")
        self.client = client

    def build_card(self, record: HandoffRecord, ticket: Ticket) -> Dict[str, Any]:
        description = extract_text_without_images(ticket.description)[:200]
        ticket_url = f"{self.app_url}/staff/tickets/{ticket.id}"
        fields = [
            f"**模块**: {ticket.module or '-'}",
            f"**区域**: {ticket.area or '-'}",
            f"**优先级**: {record.priority.value}",
            f"**原因**: {record.handoff_reason}",
            f"**时间**: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        ]
        return {
            "msg_type": "interactive",
            "card": {
                "header": {
                    "title": {"tag": "plain_text", "content": f"转人工: {ticket.title}"},
                    "template": PRIORITY_THEMES.get(ticket.priority or "", "blue"),
                },
                "elements": [
                    {"tag": "div", "text": {"tag": "lark_md", "content": "\n".join(fields)}},
                    {"tag": "div", "text": {"tag": "lark_md", "content": description or "-"}},
                    {
                        "tag": "action",
                        "actions": [
                            {
                                "tag": "button",
                                "text": {"tag": "plain_text", "content": "查看工单"},
                                "url": ticket_url,
                                "type": "primary",
                            }
                        ],
                    },
                ],
            },
        }

    async def send(self, record: HandoffRecord, ticket: Ticket) -> None:
        if not self.webhook_url:
            logger.info("feishu_not_configured", ticket_id=ticket.id)
            return
        payload = self.build_card(record, ticket)
        if self.client is not None:
            response = await self.client.post(self.webhook_url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.webhook_url, json=payload)
        response.raise_for_status()
        body = response.json()
        if isinstance(body, dict) and body.get("code", 0) != 0:
            raise RuntimeError(f"Feishu webhook rejected message: {body.get('msg')}")


class LogOnlyChannel:
    """Channel without a backing service; records the notification in the log."""

    def __init__(self, name: str):
        self.name = name

    async def send(self, record: HandoffRecord, ticket: Ticket) -> None:
        logger.info("handoff_notification_logged", channel=self.name, ticket_id=ticket.id, record_id=record.id)


class HandoffNotifier:
    """
    Dispatches handoff notifications in background tasks.

    The record is marked sent on success or stores the error otherwise. A record
    with a dispatch already in flight is not dispatched again.
    """

    def __init__(
        self,
        repository: TicketRepository,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.repository = repository
        self.channels: Dict[str, NotificationChannel] = channels or {
            "feishu": FeishuWebhookChannel(settings.feishu_webhook_url, settings.app_url),
            "email": LogOnlyChannel("email"),
            "sms": LogOnlyChannel("sms"),
        }
        self._in_flight: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()

    def is_in_flight(self, record_id: Optional[int]) -> bool:
        return record_id in self._in_flight

    def dispatch(self, record: HandoffRecord, ticket: Ticket, channel: str = "feishu") -> bool:
        """
        Schedule a notification without waiting for it.

        Returns:
            False when a dispatch for this record is already running
        """
        if record.id is None or record.id in self._in_flight:
            return False
        self._in_flight.add(record.id)
        task = asyncio.create_task(self._deliver(record, ticket, channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("handoff_notification_scheduled", record_id=record.id, ticket_id=ticket.id, channel=channel)
        return True

    async def _deliver(self, record: HandoffRecord, ticket: Ticket, channel: str) -> None:
        log = logger.bind(record_id=record.id, ticket_id=ticket.id, channel=channel)
        try:
            sender = self.channels.get(channel)
            if sender is None:
                raise ValueError(f"Unknown notification channel: {channel}")
            await sender.send(record, ticket)
            await self.repository.mark_notification_sent(record.id)
            log.info("handoff_notification_sent")
        except Exception as e:
            log.error("handoff_notification_failed", error=str(e))
            try:
                await self.repository.mark_notification_error(record.id, str(e))
            except Exception as mark_error:
                log.error("handoff_notification_error_not_saved", error=str(mark_error))
        finally:
            self._in_flight.discard(record.id)

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
