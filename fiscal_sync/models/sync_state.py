"""Sync cursor state per tenant."""
from sqlalchemy import Column, BigInteger, Integer, String, Text, Date, DateTime, ForeignKey
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK

SYNC_STATUS_RUNNING = 'running'
SYNC_STATUS_PARTIAL = 'partial'
SYNC_STATUS_DONE = 'done'
SYNC_STATUS_ERROR = 'error'


class SyncState(Base):
    """Last sync progress for a tenant (one row per tenant)."""

    __tablename__ = 'sync_state'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, unique=True)
    cursor = Column(String(64), nullable=True)  # Offset, as a string
    start_date = Column(Date, nullable=True)  # Window the cursor belongs to
    status = Column(String(16), nullable=False, default=SYNC_STATUS_DONE)
    last_error = Column(Text, nullable=True)
    pages_done = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def to_dict(self):
        return {
            'cursor': self.cursor,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'status': self.status,
            'last_error': self.last_error,
            'pages_done': self.pages_done,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<SyncState(tenant_id={self.tenant_id}, status='{self.status}', cursor={self.cursor})>"
