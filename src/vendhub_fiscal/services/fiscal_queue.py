"""
Fiscal operation queue

Durable, priority-ordered store of fiscal operations with the status
machine of a queue item:

    PENDING -> PROCESSING -> SUCCESS
    PENDING -> PROCESSING -> RETRY -> PROCESSING -> ... -> SUCCESS
                                                      -> FAILED

SUCCESS and FAILED are terminal. Every transition runs inside one store
transaction and is appended to the item's history.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from vendhub_fiscal.config.fiscal_config import FiscalConfig
from vendhub_fiscal.exceptions import (
    ErrorClassification,
    InvalidTransitionError,
    QueueItemNotFoundError,
    RetryLimitExceededError,
    ValidationError,
)
from vendhub_fiscal.models.queue import (
    ACTIVE_STATUSES,
    Acknowledgement,
    FiscalPayload,
    FiscalQueueItem,
    OperationKind,
    QueueStatus,
    StatusChange,
)
from vendhub_fiscal.models.reports import QueueStats
from vendhub_fiscal.store.memory import InMemoryFiscalStore
from vendhub_fiscal.utils.audit import AuditLogger
from vendhub_fiscal.utils.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class FiscalQueue:
    """
    Queue of fiscal operations

    Example:
        >>> queue = FiscalQueue(store, clock)
        >>> item = queue.enqueue("device-1", OperationKind.SHIFT_OPEN, payload, priority=10)
        >>> queue.dequeue_next("device-1").id == item.id
        True
    """

    def __init__(
        self,
        store: InMemoryFiscalStore,
        clock: Optional[Clock] = None,
        config: Optional[FiscalConfig] = None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._config = config or FiscalConfig()
        self._audit = audit or AuditLogger(enabled=False)

    # ============ Admission ============

    def enqueue(
        self,
        device_id: str,
        operation: OperationKind,
        payload: FiscalPayload,
        priority: Optional[int] = None,
        max_retries: Optional[int] = None,
        organization_id: Optional[str] = None,
    ) -> FiscalQueueItem:
        """
        Admit an operation, deduplicated by the payload's idempotency key

        While an item with the same key is not terminal, that item is
        returned instead of creating a new one.

        Raises:
            ValidationError: If the payload does not match the operation or device
        """
        operation = OperationKind(operation)
        if payload.operation != operation.value:
            raise ValidationError(
                f"Payload operation {payload.operation} does not match {operation.value}",
                field="operation",
            )
        if payload.device_id != device_id:
            raise ValidationError("Payload device_id does not match", field="device_id")

        max_retries = self._config.max_retries if max_retries is None else max_retries
        if max_retries < 1:
            raise ValidationError("max_retries must be at least 1", field="max_retries")
        if priority is None:
            priority = self._config.priority_for(operation.value)

        with self._store.transaction():
            for existing in self._store.items_by_key(payload.idempotency_key):
                if not existing.is_terminal:
                    logger.debug(
                        f"Duplicate admission of {payload.idempotency_key}; "
                        f"returning item {existing.id}"
                    )
                    self._audit.record(
                        "queue.item.deduplicated", entity_id=existing.id,
                        device_id=device_id, idempotency_key=payload.idempotency_key,
                    )
                    return existing

            now = self._clock.now()
            item = FiscalQueueItem(
                organization_id=organization_id,
                device_id=device_id,
                operation=operation,
                payload=payload,
                priority=priority,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
                history=[StatusChange(status=QueueStatus.PENDING, at=now)],
            )
            item = self._store.add_item(item)

        self._audit.record(
            "queue.item.enqueued", entity_id=item.id, device_id=device_id,
            operation=operation.value, priority=priority,
            idempotency_key=payload.idempotency_key,
        )
        logger.info(
            f"Enqueued {operation.value} item {item.id} for device {device_id} "
            f"(priority {priority})"
        )
        return item

    # ============ Selection ============

    def get(self, item_id: str) -> FiscalQueueItem:
        item = self._store.get_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    def is_eligible(self, item: FiscalQueueItem, now: datetime) -> bool:
        if item.status is QueueStatus.PENDING:
            return True
        return (
            item.status is QueueStatus.RETRY
            and item.next_retry_at is not None
            and item.next_retry_at <= now
        )

    def dequeue_next(self, device_id: Optional[str] = None) -> Optional[FiscalQueueItem]:
        """
        Highest-priority eligible item, oldest first within a priority

        Returns None when nothing is eligible. The item is not claimed.
        """
        now = self._clock.now()
        eligible = self._store.list_items(
            lambda i: (device_id is None or i.device_id == device_id)
            and self.is_eligible(i, now)
        )
        if not eligible:
            return None
        return min(eligible, key=lambda i: (-i.priority, i.created_at, i.sequence))

    def claim_next(self, device_id: str) -> Optional[FiscalQueueItem]:
        """Select and mark PROCESSING in one transaction"""
        with self._store.transaction():
            item = self.dequeue_next(device_id)
            if item is None:
                return None
            return self.mark_processing(item.id)

    # ============ Transitions ============

    def mark_processing(self, item_id: str) -> FiscalQueueItem:
        """PENDING/RETRY -> PROCESSING; re-entrant processing is rejected"""
        with self._store.transaction():
            item = self.get(item_id)
            self._require(item, (QueueStatus.PENDING, QueueStatus.RETRY), QueueStatus.PROCESSING)

            now = self._clock.now()
            item.processing_started_at = now
            item.next_retry_at = None
            self._transition(item, QueueStatus.PROCESSING, now)

        self._audit.record(
            "queue.item.processing", entity_id=item.id, device_id=item.device_id,
            attempt=item.retry_count + 1,
        )
        return item

    def mark_success(self, item_id: str, result: Optional[Dict[str, Any]] = None) -> FiscalQueueItem:
        """PROCESSING -> SUCCESS"""
        with self._store.transaction():
            item = self.get(item_id)
            self._require(item, (QueueStatus.PROCESSING,), QueueStatus.SUCCESS)

            now = self._clock.now()
            item.result = result
            item.processed_at = now
            item.processing_started_at = None
            item.last_error = None
            item.error_classification = None
            self._transition(item, QueueStatus.SUCCESS, now)

        self._audit.record(
            "queue.item.succeeded", entity_id=item.id, device_id=item.device_id,
            operation=item.operation.value, retry_count=item.retry_count,
        )
        logger.info(
            f"{item.operation.value} item {item.id} succeeded "
            f"after {item.retry_count + 1} attempt(s)"
        )
        return item

    def mark_retry(
        self,
        item_id: str,
        error: str,
        next_retry_at: datetime,
        classification: ErrorClassification = ErrorClassification.TRANSIENT,
        count_attempt: bool = True,
    ) -> FiscalQueueItem:
        """
        PROCESSING -> RETRY with retry_count + 1

        With count_attempt=False the item waits without spending its budget;
        used while it is blocked behind other items that will finish on
        their own.

        Raises:
            RetryLimitExceededError: If the budget is spent; call mark_failed instead
        """
        with self._store.transaction():
            item = self.get(item_id)
            self._require(item, (QueueStatus.PROCESSING,), QueueStatus.RETRY)

            if count_attempt and item.retry_count + 1 >= item.max_retries:
                raise RetryLimitExceededError(item.id, item.retry_count + 1, item.max_retries)

            now = self._clock.now()
            if count_attempt:
                item.retry_count += 1
            item.next_retry_at = next_retry_at
            item.last_error = error
            item.error_classification = classification
            item.processing_started_at = None
            self._transition(item, QueueStatus.RETRY, now, note=error)

        self._audit.record(
            "queue.item.retry", entity_id=item.id, device_id=item.device_id,
            retry_count=item.retry_count, next_retry_at=next_retry_at.isoformat(),
            classification=classification.value, error=error,
        )
        logger.warning(
            f"{item.operation.value} item {item.id} will retry at "
            f"{next_retry_at.isoformat()} ({item.retry_count}/{item.max_retries}): {error}"
        )
        return item

    def mark_failed(
        self,
        item_id: str,
        error: str,
        classification: ErrorClassification = ErrorClassification.PERMANENT,
    ) -> FiscalQueueItem:
        """Any non-terminal status -> FAILED (terminal)"""
        with self._store.transaction():
            item = self.get(item_id)
            self._require(item, tuple(ACTIVE_STATUSES), QueueStatus.FAILED)

            now = self._clock.now()
            if item.status is QueueStatus.PROCESSING:
                item.retry_count = min(item.retry_count + 1, item.max_retries)
            item.last_error = error
            item.error_classification = classification
            item.next_retry_at = None
            item.processing_started_at = None
            item.processed_at = now
            self._transition(item, QueueStatus.FAILED, now, note=error)

        self._audit.record(
            "queue.item.failed", entity_id=item.id, device_id=item.device_id,
            operation=item.operation.value, retry_count=item.retry_count,
            classification=classification.value, error=error,
        )
        logger.error(
            f"{item.operation.value} item {item.id} FAILED after "
            f"{item.retry_count} attempt(s): {error}"
        )
        return item

    def acknowledge(
        self, item_id: str, acknowledged_by: str, note: Optional[str] = None
    ) -> FiscalQueueItem:
        """
        Record operator sign-off on a FAILED item

        The item stays FAILED; it is never reset to PENDING. A lost sale is
        recovered by admitting a new item under a new idempotency key.
        """
        with self._store.transaction():
            item = self.get(item_id)
            if item.status is not QueueStatus.FAILED:
                raise InvalidTransitionError(
                    "Queue item", item.id, item.status.value, "acknowledged"
                )
            item.acknowledgement = Acknowledgement(
                acknowledged_by=acknowledged_by,
                acknowledged_at=self._clock.now(),
                note=note,
            )
            item.updated_at = item.acknowledgement.acknowledged_at
            self._store.put_item(item)

        self._audit.record(
            "queue.item.acknowledged", entity_id=item.id, device_id=item.device_id,
            acknowledged_by=acknowledged_by, note=note,
        )
        return item

    def recover_stale(
        self,
        threshold_ms: Optional[int] = None,
        skip_devices: Iterable[str] = (),
    ) -> List[FiscalQueueItem]:
        """
        Move items stuck in PROCESSING back to RETRY with retry_count + 1

        Items whose budget is spent become FAILED. Devices currently leased
        by a live worker are skipped.
        """
        if threshold_ms is None:
            threshold_ms = self._config.stale_processing_after
        skip = set(skip_devices)
        now = self._clock.now()
        cutoff = now - timedelta(milliseconds=threshold_ms)
        recovered = []

        with self._store.transaction():
            stale = self._store.list_items(
                lambda i: i.status is QueueStatus.PROCESSING
                and i.device_id not in skip
                and i.processing_started_at is not None
                and i.processing_started_at <= cutoff
            )
            for item in stale:
                error = (
                    f"Recovered from PROCESSING after {threshold_ms} ms "
                    f"(started {item.processing_started_at.isoformat()})"
                )
                item.retry_count = min(item.retry_count + 1, item.max_retries)
                item.last_error = error
                item.error_classification = ErrorClassification.TRANSIENT
                item.processing_started_at = None
                if item.retry_count >= item.max_retries:
                    item.processed_at = now
                    self._transition(item, QueueStatus.FAILED, now, note=error)
                else:
                    item.next_retry_at = now
                    self._transition(item, QueueStatus.RETRY, now, note=error)
                recovered.append(item)

        for item in recovered:
            self._audit.record(
                "queue.item.recovered", entity_id=item.id, device_id=item.device_id,
                status=item.status.value, retry_count=item.retry_count,
            )
            logger.warning(
                f"Recovered stale {item.operation.value} item {item.id} -> {item.status.value}"
            )
        return recovered

    # ============ Queries ============

    def pending_for_shift(
        self, shift_id: str, exclude_item_id: Optional[str] = None
    ) -> List[FiscalQueueItem]:
        """Non-terminal items that reference a shift, directly or via their receipt"""
        def references(item: FiscalQueueItem) -> bool:
            if item.id == exclude_item_id or item.status not in ACTIVE_STATUSES:
                return False
            if item.shift_id == shift_id:
                return True
            if item.receipt_id is not None:
                receipt = self._store.get_receipt(item.receipt_id)
                return receipt is not None and receipt.shift_id == shift_id
            return False

        return self._store.list_items(references)

    def list_items(
        self,
        organization_id: Optional[str] = None,
        device_id: Optional[str] = None,
        status: Optional[QueueStatus] = None,
        operation: Optional[OperationKind] = None,
        include_acknowledged: bool = True,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[FiscalQueueItem]:
        """Items ordered by priority (desc), then creation time"""
        items = self._store.list_items(
            lambda i: (organization_id is None or i.organization_id == organization_id)
            and (device_id is None or i.device_id == device_id)
            and (status is None or i.status is status)
            and (operation is None or i.operation is operation)
            and (include_acknowledged or i.acknowledgement is None)
        )
        items.sort(key=lambda i: (-i.priority, i.created_at, i.sequence))
        end = None if limit is None else offset + limit
        return items[offset:end]

    def failed_items(
        self,
        organization_id: Optional[str] = None,
        device_id: Optional[str] = None,
        include_acknowledged: bool = False,
    ) -> List[FiscalQueueItem]:
        """FAILED items awaiting operator action"""
        return self.list_items(
            organization_id=organization_id,
            device_id=device_id,
            status=QueueStatus.FAILED,
            include_acknowledged=include_acknowledged,
        )

    def items_for_key(self, idempotency_key: str) -> List[FiscalQueueItem]:
        return self._store.items_by_key(idempotency_key)

    def stats(self, device_id: str) -> QueueStats:
        stats = QueueStats()
        for item in self._store.list_items(lambda i: i.device_id == device_id):
            if item.status in (QueueStatus.PENDING, QueueStatus.RETRY):
                stats.pending += 1
            elif item.status is QueueStatus.PROCESSING:
                stats.processing += 1
            elif item.status is QueueStatus.FAILED and item.acknowledgement is None:
                stats.failed += 1
            elif item.status is QueueStatus.SUCCESS:
                stats.succeeded += 1
        return stats

    # ============ Private Helper Methods ============

    def _require(
        self, item: FiscalQueueItem, allowed: tuple, target: QueueStatus
    ) -> None:
        if item.status not in allowed:
            raise InvalidTransitionError(
                "Queue item", item.id, item.status.value, target.value
            )

    def _transition(
        self,
        item: FiscalQueueItem,
        status: QueueStatus,
        now: datetime,
        note: Optional[str] = None,
    ) -> None:
        item.status = status
        item.updated_at = now
        item.history.append(StatusChange(status=status, at=now, note=note))
        self._store.put_item(item)
