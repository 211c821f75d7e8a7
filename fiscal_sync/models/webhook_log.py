"""Webhook delivery log - idempotency per event id."""
from sqlalchemy import Column, BigInteger, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK

WEBHOOK_STATUS_RECEIVED = 'received'
WEBHOOK_STATUS_PROCESSED = 'processed'
WEBHOOK_STATUS_ERROR = 'error'


class WebhookLog(Base):
    """Record of a received Wix webhook event."""

    __tablename__ = 'webhook_log'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=True, index=True)
    event_id = Column(String(128), nullable=False)
    event_type = Column(String(128), nullable=True)
    order_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default=WEBHOOK_STATUS_RECEIVED)
    error_message = Column(Text, nullable=True)
    payload_preview = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('event_id', name='uq_webhook_log_event_id'),
    )

    def __repr__(self):
        return f"<WebhookLog(event_id='{self.event_id}', status='{self.status}')>"
