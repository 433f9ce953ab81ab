from typing import Any, Mapping, Optional, Union

import pydantic

from email_queue.config import Settings, settings
from email_queue.exceptions import NotFoundError, PersistenceError, TransportUnavailable, ValidationError
from email_queue.schemas import EmailRequest, EnqueueResult
from email_queue.services.delivery import DeliveryOutcome, attempt_delivery
from email_queue.store import MessageStore
from email_queue.transport import Transport
from email_queue.utils.logger import get_logger

logger = get_logger("email_service")


def format_errors(errors) -> str:
    parts = []
    for err in errors:
        field = ".".join(str(loc) for loc in err["loc"]) or "body"
        parts.append(f"{field}: {err['msg']}")
    return "; ".join(parts)


def parse_request(payload: Union[EmailRequest, Mapping[str, Any]]) -> EmailRequest:
    if isinstance(payload, EmailRequest):
        return payload
    if not isinstance(payload, Mapping):
        raise ValidationError("Request body must be a JSON object")
    try:
        return EmailRequest.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(format_errors(e.errors())) from e


async def enqueue_email(
    payload: Union[EmailRequest, Mapping[str, Any]],
    store: MessageStore,
    transport: Optional[Transport],
    config: Settings = settings,
) -> EnqueueResult:
    """Persist a new message and, when a transport is configured, try it once.

    Only validation and insert failures raise; once the record exists the
    caller always gets a successful result, delivered or queued.
    """
    request = parse_request(payload)

    record = store.insert(
        {
            "to_email": request.to,
            "to_name": request.to_name,
            "from_email": request.from_email or config.default_from_email,
            "from_name": request.from_name or config.default_from_name,
            "reply_to": request.reply_to,
            "subject": request.subject,
            "html_content": request.html,
            "text_content": request.text,
            "template_type": request.template_type,
            "template_data": request.template_data,
            "priority": request.priority or config.default_priority,
            "max_attempts": config.max_attempts,
        }
    )
    queued = EnqueueResult(message="queued", email_id=record.id)

    if transport is None:
        logger.info("email_queued_without_transport", extra={"email_id": record.id})
        return queued

    try:
        attempt = await attempt_delivery(store, transport, record)
    except TransportUnavailable as e:
        logger.warning("immediate_attempt_skipped", extra={"email_id": record.id, "error": str(e)})
        return queued
    except (PersistenceError, NotFoundError) as e:
        logger.error("immediate_attempt_aborted", extra={"email_id": record.id, "error": str(e)})
        return queued

    if attempt.outcome == DeliveryOutcome.sent:
        return EnqueueResult(message="sent", email_id=record.id, provider_id=attempt.provider_id)

    logger.info("email_queued", extra={"email_id": record.id, "outcome": attempt.outcome.value})
    return queued
