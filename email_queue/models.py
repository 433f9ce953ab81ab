import enum
import uuid

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from email_queue.database import Base


class EmailStatusEnum(str, enum.Enum):
    pending = "pending"
    sending = "sending"
    sent = "sent"
    failed = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


class EmailQueue(Base):
    __tablename__ = "email_queue"

    id = Column(String(36), primary_key=True, default=_new_id)
    to_email = Column(String(254), nullable=False, index=True)
    to_name = Column(String(255), nullable=True)
    from_email = Column(String(254), nullable=False)
    from_name = Column(String(255), nullable=True)
    reply_to = Column(String(254), nullable=True)
    subject = Column(String(998), nullable=False)
    html_content = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)
    template_type = Column(String(128), nullable=True)
    template_data = Column(JSON, nullable=False, default=dict)

    status = Column(
        Enum(EmailStatusEnum, native_enum=False, length=16),
        default=EmailStatusEnum.pending,
        nullable=False,
        index=True,
    )
    priority = Column(Integer, nullable=False, default=2)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    last_error = Column(Text, nullable=True)
    provider_id = Column(String(255), nullable=True)

    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    logs = relationship("EmailLog", back_populates="email", order_by="EmailLog.created_at")


class EmailLog(Base):
    """One row per delivery attempt, written with the attempt's outcome."""

    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email_id = Column(String(36), ForeignKey("email_queue.id"), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False)
    provider_id = Column(String(255), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    email = relationship("EmailQueue", back_populates="logs")
