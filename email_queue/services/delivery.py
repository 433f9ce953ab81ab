import enum
from dataclasses import dataclass
from typing import Optional

from email_queue.exceptions import TransportUnavailable
from email_queue.models import EmailQueue, EmailStatusEnum
from email_queue.schemas import EmailRecord
from email_queue.store import MessageStore
from email_queue.transport import OutboundMessage, SendResult, Transport
from email_queue.utils.logger import get_logger

logger = get_logger("delivery")


class DeliveryOutcome(str, enum.Enum):
    sent = "sent"
    retry = "retry"        # back to pending, attempts remain
    failed = "failed"      # attempts exhausted
    skipped = "skipped"    # another invocation claimed the record first


@dataclass(frozen=True)
class DeliveryAttempt:
    outcome: DeliveryOutcome
    provider_id: Optional[str] = None
    error: Optional[str] = None


async def attempt_delivery(store: MessageStore, transport: Transport, record: EmailRecord) -> DeliveryAttempt:
    """Claim ``record`` and make exactly one send attempt for it.

    Raises ``TransportUnavailable`` when the transport cannot be used. If
    that is only discovered by the provider call (credentials refused), the
    claim is released again and the attempt is not counted. Store errors
    propagate to the caller.
    """
    transport.ensure_available()

    claimed = store.update_fields(
        record.id,
        {"status": EmailStatusEnum.sending, "attempts": EmailQueue.attempts + 1},
        expected_status=EmailStatusEnum.pending,
        expected_attempts=record.attempts,
    )
    if claimed is None:
        logger.info("delivery_skipped", extra={"email_id": record.id})
        return DeliveryAttempt(DeliveryOutcome.skipped)

    try:
        result = await transport.send(OutboundMessage.from_record(claimed))
    except TransportUnavailable as e:
        store.update_fields(
            claimed.id,
            {"status": EmailStatusEnum.pending, "attempts": record.attempts},
            expected_status=EmailStatusEnum.sending,
            expected_attempts=claimed.attempts,
        )
        logger.warning("delivery_released", extra={"email_id": claimed.id, "error": str(e)})
        raise
    except Exception as e:
        logger.exception("transport_error", extra={"email_id": claimed.id})
        result = SendResult.rejected(str(e) or type(e).__name__)

    if result.delivered:
        store.update_fields(
            claimed.id,
            {"status": EmailStatusEnum.sent, "sent_at": store.clock(), "provider_id": result.provider_id},
            log={"attempt": claimed.attempts, "status": "sent", "provider_id": result.provider_id},
        )
        logger.info(
            "email_sent",
            extra={"email_id": claimed.id, "attempt": claimed.attempts, "provider_id": result.provider_id},
        )
        return DeliveryAttempt(DeliveryOutcome.sent, provider_id=result.provider_id)

    exhausted = claimed.attempts >= claimed.max_attempts
    store.update_fields(
        claimed.id,
        {
            "status": EmailStatusEnum.failed if exhausted else EmailStatusEnum.pending,
            "last_error": result.reason,
        },
        log={"attempt": claimed.attempts, "status": "failed", "error": result.reason},
    )
    if exhausted:
        logger.error(
            "email_failed",
            extra={"email_id": claimed.id, "attempts": claimed.attempts, "error": result.reason},
        )
        return DeliveryAttempt(DeliveryOutcome.failed, error=result.reason)

    logger.warning(
        "email_retry_pending",
        extra={"email_id": claimed.id, "attempt": claimed.attempts, "error": result.reason},
    )
    return DeliveryAttempt(DeliveryOutcome.retry, error=result.reason)
