from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from email_queue.exceptions import NotFoundError, PersistenceError
from email_queue.models import EmailLog, EmailQueue, EmailStatusEnum
from email_queue.schemas import EmailLogEntry, EmailRecord
from email_queue.utils.logger import get_logger

logger = get_logger("store")

# Columns callers may set on insert; lifecycle columns are owned by the store.
CONTENT_FIELDS = {
    "to_email",
    "to_name",
    "from_email",
    "from_name",
    "reply_to",
    "subject",
    "html_content",
    "text_content",
    "template_type",
    "template_data",
    "priority",
    "max_attempts",
}

MUTABLE_FIELDS = {"status", "attempts", "last_error", "provider_id", "sent_at"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Durable storage for queued messages.

    Every public method runs in its own short transaction and hands back
    detached ``EmailRecord`` snapshots.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def insert(self, fields: Dict[str, Any]) -> EmailRecord:
        unknown = set(fields) - CONTENT_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} on insert")

        now = self.clock()
        row = EmailQueue(
            **fields,
            status=EmailStatusEnum.pending,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        if row.template_data is None:
            row.template_data = {}
        try:
            with self.session_factory() as db:
                db.add(row)
                db.commit()
                db.refresh(row)
                record = EmailRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.error("insert_failed", extra={"to_email": fields.get("to_email"), "error": str(e)})
            raise PersistenceError(f"Failed to queue email: {e}") from e

        logger.info("email_inserted", extra={"email_id": record.id, "priority": record.priority})
        return record

    def update_fields(
        self,
        email_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EmailStatusEnum] = None,
        expected_attempts: Optional[int] = None,
        log: Optional[Dict[str, Any]] = None,
    ) -> Optional[EmailRecord]:
        """Apply ``fields`` to one record atomically and return the result.

        With ``expected_status`` the write only happens while the record is
        still in that status, and with ``expected_attempts`` only while the
        attempt counter still holds that value; otherwise nothing changes and
        ``None`` is returned. Field values may be column expressions such as
        ``EmailQueue.attempts + 1``. ``log`` appends an attempt-log row in the
        same transaction.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update {sorted(unknown)}")

        now = self.clock()
        stmt = update(EmailQueue).where(EmailQueue.id == email_id)
        if expected_status is not None:
            stmt = stmt.where(EmailQueue.status == expected_status)
        if expected_attempts is not None:
            stmt = stmt.where(EmailQueue.attempts == expected_attempts)
        stmt = stmt.values(**fields, updated_at=now).execution_options(synchronize_session=False)

        try:
            with self.session_factory() as db:
                result = db.execute(stmt)
                if result.rowcount == 0:
                    exists = db.scalar(select(EmailQueue.id).where(EmailQueue.id == email_id))
                    db.rollback()
                    if exists is None:
                        raise NotFoundError(email_id)
                    logger.warning(
                        "update_conflict",
                        extra={
                            "email_id": email_id,
                            "expected_status": str(expected_status),
                            "expected_attempts": expected_attempts,
                        },
                    )
                    return None
                if log is not None:
                    db.add(EmailLog(email_id=email_id, created_at=now, **log))
                db.commit()
                row = db.get(EmailQueue, email_id)
                return EmailRecord.model_validate(row)
        except SQLAlchemyError as e:
            logger.error("update_failed", extra={"email_id": email_id, "error": str(e)})
            raise PersistenceError(f"Failed to update email {email_id}: {e}") from e

    def select_eligible_for_delivery(self, limit: int) -> List[EmailRecord]:
        stmt = (
            select(EmailQueue)
            .where(EmailQueue.status == EmailStatusEnum.pending)
            .where(EmailQueue.attempts < EmailQueue.max_attempts)
            .order_by(EmailQueue.priority.asc(), EmailQueue.created_at.asc())
            .limit(limit)
        )
        try:
            with self.session_factory() as db:
                return [EmailRecord.model_validate(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as e:
            logger.error("select_eligible_failed", extra={"error": str(e)})
            raise PersistenceError(f"Failed to fetch pending emails: {e}") from e

    def get_by_id(self, email_id: str) -> EmailRecord:
        try:
            with self.session_factory() as db:
                row = db.get(EmailQueue, email_id)
                if row is None:
                    raise NotFoundError(email_id)
                return EmailRecord.model_validate(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load email {email_id}: {e}") from e

    def list_emails(self, status: Optional[EmailStatusEnum] = None, limit: int = 100) -> List[EmailRecord]:
        stmt = select(EmailQueue).order_by(EmailQueue.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(EmailQueue.status == status)
        try:
            with self.session_factory() as db:
                return [EmailRecord.model_validate(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list emails: {e}") from e

    def list_logs(self, email_id: str) -> List[EmailLogEntry]:
        stmt = (
            select(EmailLog)
            .where(EmailLog.email_id == email_id)
            .order_by(EmailLog.created_at.desc(), EmailLog.id.desc())
        )
        try:
            with self.session_factory() as db:
                if db.get(EmailQueue, email_id) is None:
                    raise NotFoundError(email_id)
                return [EmailLogEntry.model_validate(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load logs for {email_id}: {e}") from e
