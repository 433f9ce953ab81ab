from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from email_queue.config import Settings
from email_queue.database import build_database_url
from email_queue.schemas import ConfigStatus, EmailStatusView, StoreEnvironment
from email_queue.store import MessageStore
from email_queue.transport import Transport


def get_status(store: MessageStore, email_id: str) -> EmailStatusView:
    record = store.get_by_id(email_id)
    return EmailStatusView(
        id=record.id,
        status=record.status,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        last_error=record.last_error,
        sent_at=record.sent_at,
    )


def config_status(config: Settings, transport: Optional[Transport]) -> ConfigStatus:
    """Configuration probe. Reports presence of secrets, never their values."""
    try:
        url = make_url(build_database_url(config))
        has_store_key = bool(url.password)
    except ArgumentError:
        has_store_key = False

    return ConfigStatus(
        has_transport_configured=transport is not None,
        transport_config_length=transport.credential_length if transport is not None else 0,
        environment=StoreEnvironment(
            has_store_url=config.has_database_url,
            has_store_key=has_store_key,
        ),
    )
