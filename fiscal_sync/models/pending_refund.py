"""Refund events waiting for their sale receipt."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK, JSONPayload

PENDING_STATUS_PENDING = 'pending'
PENDING_STATUS_PROCESSED = 'processed'
PENDING_STATUS_FAILED = 'failed'


class PendingRefund(Base):
    """A refund that arrived before the sale receipt was issued."""

    __tablename__ = 'pending_refund'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False)
    order_id = Column(String(64), nullable=False)
    refund_amount = Column(Numeric(12, 2), nullable=True)  # None = full refund
    refund_key = Column(String(64), nullable=False, default='full')
    reason = Column(String(255), nullable=True)
    event_payload = Column(JSONPayload, nullable=True)
    status = Column(String(16), nullable=False, default=PENDING_STATUS_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_pending_refund_status', 'tenant_id', 'status'),
    )

    def __repr__(self):
        return f"<PendingRefund(id={self.id}, order_id='{self.order_id}', status='{self.status}')>"
