"""
Notification dispatcher.

``send`` records a pending audit row and queues it; it never raises into the
caller, so a notification problem cannot undo the business transition that
produced it. Messages a recipient has opted out of are dropped before the
row is written, and recipients with an unsubscribe token get the link in
the payload. ``deliver`` performs one attempt under a short lease, appends a
delivery attempt row and moves the audit record to ``sent``, ``retrying``
(exponential backoff) or ``failed`` once ``max_retries`` retries are used up.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from marketplace.core.exceptions import DeliveryFailure
from marketplace.core.logging import get_structlog_logger
from marketplace.services.channels import Channel, SendReceipt
from marketplace.services.notification_queue import NotificationQueue
from marketplace.services.records import DeliveryAttemptRecord, NotificationRecord, utcnow
from marketplace.services.state_machine import NotificationStatus, notification_machine
from marketplace.services.store import Store
from marketplace.services.templates import TEMPLATES, render

logger = get_structlog_logger(__name__)

OPEN_STATUSES = (NotificationStatus.PENDING, NotificationStatus.RETRYING)


@dataclass
class DispatchSummary:
    processed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    notification_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "retrying": self.retrying,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class NotificationDispatcher:
    def __init__(
        self,
        store: Store,
        queue: NotificationQueue,
        channels: Mapping[str, Channel],
        max_retries: int = 3,
        backoff_base_seconds: int = 60,
        send_timeout_seconds: float = 10.0,
        lease_seconds: int = 300,
        eager_delivery: bool = True,
        frontend_url: str = "",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.channels = dict(channels)
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.send_timeout_seconds = send_timeout_seconds
        self.lease_seconds = lease_seconds
        self.eager_delivery = eager_delivery
        self.frontend_url = frontend_url.rstrip("/")
        self.clock = clock
        self._tasks: Set[asyncio.Task] = set()

    def backoff_delay(self, retry_count: int) -> timedelta:
        """Delay before retry number ``retry_count`` (1-based): base, 2*base, 4*base..."""
        return timedelta(seconds=self.backoff_base_seconds * (2 ** max(retry_count - 1, 0)))

    async def send(
        self,
        recipient: Optional[str],
        message_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        channel: str = "email",
        user_id: Optional[int] = None,
        lead_id: Optional[int] = None,
        service_request_id: Optional[int] = None,
        skip_preferences: bool = False,
    ) -> Optional[NotificationRecord]:
        payload = dict(payload or {})
        if not recipient:
            logger.warning("notification.no_recipient", message_type=message_type, lead_id=lead_id)
            return None
        if message_type not in TEMPLATES:
            logger.error("notification.unknown_type", message_type=message_type, lead_id=lead_id)
            return None

        now = self.clock()
        try:
            if user_id is not None and not skip_preferences:
                async with self.store.transaction() as tx:
                    preference = await tx.get_notification_preference(user_id)
                if preference is not None:
                    if not preference.allows(message_type, channel):
                        logger.info(
                            "notification.skipped_by_preference",
                            user_id=user_id,
                            message_type=message_type,
                            channel=channel,
                            lead_id=lead_id,
                        )
                        return None
                    if preference.unsubscribe_token:
                        payload["unsubscribe_url"] = f"{self.frontend_url}/unsubscribe?token={preference.unsubscribe_token}"
            record = NotificationRecord(
                recipient=recipient,
                message_type=message_type,
                channel=channel,
                subject=render(message_type, payload).subject,
                payload=payload,
                user_id=user_id,
                lead_id=lead_id,
                service_request_id=service_request_id,
                max_retries=self.max_retries,
                next_attempt_at=now,
            )
            async with self.store.transaction() as tx:
                record = await tx.add_notification(record)
        except Exception as e:
            logger.error(
                "notification.record_failed",
                message_type=message_type,
                lead_id=lead_id,
                error=str(e),
                exc_info=True,
            )
            return None

        try:
            await self.queue.push(record.id, now)
        except Exception as e:
            # The ledger sweep in process_due still finds the record
            logger.warning("notification.enqueue_failed", notification_id=record.id, error=str(e))

        logger.info(
            "notification.enqueued",
            notification_id=record.id,
            message_type=message_type,
            channel=channel,
            lead_id=lead_id,
        )

        if self.eager_delivery:
            task = asyncio.create_task(self._deliver_quietly(record.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return record

    async def _deliver_quietly(self, notification_id: int) -> None:
        try:
            await self.deliver(notification_id)
        except Exception as e:
            logger.error("notification.eager_delivery_error", notification_id=notification_id, error=str(e), exc_info=True)

    async def _claim(self, notification_id: int, now: datetime) -> Optional[NotificationRecord]:
        async with self.store.transaction() as tx:
            record = await tx.get_notification(notification_id)
            if record is None or notification_machine.is_terminal(record.status):
                return None
            return await tx.update_notification(
                notification_id,
                expected=OPEN_STATUSES,
                expected_retry_count=record.retry_count,
                due_before=now,
                next_attempt_at=now + timedelta(seconds=self.lease_seconds),
            )

    async def _attempt(self, record: NotificationRecord) -> SendReceipt:
        channel = self.channels.get(record.channel)
        if channel is None:
            raise DeliveryFailure(f"No channel configured for {record.channel}", retryable=False)
        message = render(record.message_type, record.payload)
        try:
            return await asyncio.wait_for(channel.send(record.recipient, message), timeout=self.send_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise DeliveryFailure("Channel send timed out") from e

    async def deliver(self, notification_id: int) -> Optional[NotificationRecord]:
        """One delivery attempt. Returns the updated record, or ``None`` when not claimable."""
        record = await self._claim(notification_id, self.clock())
        if record is None:
            return None

        receipt: Optional[SendReceipt] = None
        error: Optional[str] = None
        retryable = True
        try:
            receipt = await self._attempt(record)
        except DeliveryFailure as e:
            error, retryable = e.message, e.retryable
        except Exception as e:
            error = f"{type(e).__name__}: {str(e)[:200]}"
            logger.error("notification.channel_error", notification_id=notification_id, error=error, exc_info=True)

        now = self.clock()
        attempt_number = record.retry_count + 1
        async with self.store.transaction() as tx:
            await tx.add_delivery_attempt(
                DeliveryAttemptRecord(
                    notification_id=notification_id,
                    attempt_number=attempt_number,
                    success=error is None,
                    channel=record.channel,
                    error=error,
                    external_id=receipt.external_id if receipt else None,
                    created_at=now,
                )
            )
            guard = {"expected": OPEN_STATUSES, "expected_retry_count": record.retry_count}
            if error is None:
                updated = await tx.update_notification(
                    notification_id,
                    **guard,
                    status=NotificationStatus.SENT,
                    sent_at=now,
                    last_error=None,
                    next_attempt_at=None,
                )
            elif retryable and record.retry_count < record.max_retries:
                retry_count = record.retry_count + 1
                updated = await tx.update_notification(
                    notification_id,
                    **guard,
                    status=NotificationStatus.RETRYING,
                    retry_count=retry_count,
                    last_error=error,
                    next_attempt_at=now + self.backoff_delay(retry_count),
                )
            else:
                updated = await tx.update_notification(
                    notification_id,
                    **guard,
                    status=NotificationStatus.FAILED,
                    last_error=error,
                    next_attempt_at=None,
                )

        if updated is None:
            logger.warning("notification.outcome_lost", notification_id=notification_id)
            return None

        if updated.status == NotificationStatus.SENT:
            logger.info("notification.sent", notification_id=notification_id, attempt=attempt_number)
        elif updated.status == NotificationStatus.RETRYING:
            logger.warning(
                "notification.retry_scheduled",
                notification_id=notification_id,
                retry_count=updated.retry_count,
                next_attempt_at=updated.next_attempt_at.isoformat(),
                error=error,
            )
            try:
                await self.queue.push(notification_id, updated.next_attempt_at)
            except Exception as e:
                logger.warning("notification.enqueue_failed", notification_id=notification_id, error=str(e))
        else:
            logger.error(
                "notification.failed",
                notification_id=notification_id,
                message_type=updated.message_type,
                retry_count=updated.retry_count,
                error=error,
            )
        return updated

    async def process_due(self, limit: int = 100) -> DispatchSummary:
        now = self.clock()
        try:
            ids = await self.queue.pop_due(now, limit)
        except Exception as e:
            logger.warning("notification_queue.pop_failed", error=str(e))
            ids = []

        async with self.store.transaction() as tx:
            swept = await tx.list_due_notifications(now, limit)
        for record in swept:
            if record.id not in ids:
                ids.append(record.id)

        summary = DispatchSummary()
        for notification_id in ids:
            updated = await self.deliver(notification_id)
            summary.processed += 1
            summary.notification_ids.append(notification_id)
            if updated is None:
                summary.skipped += 1
            elif updated.status == NotificationStatus.SENT:
                summary.sent += 1
            elif updated.status == NotificationStatus.RETRYING:
                summary.retrying += 1
            else:
                summary.failed += 1

        if summary.processed:
            logger.info("notification.batch_processed", **summary.to_dict())
        return summary

    async def failed_notifications(self, limit: int = 100) -> List[NotificationRecord]:
        async with self.store.transaction() as tx:
            return await tx.list_notifications(status=NotificationStatus.FAILED, limit=limit)

    async def drain(self) -> None:
        """Wait for eager deliveries still in flight."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
