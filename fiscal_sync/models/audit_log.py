"""
Audit Log model for tracking fiscal actions in the system.
"""
from sqlalchemy import Column, BigInteger, String, DateTime, ForeignKey
from sqlalchemy.sql import func
import enum

from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK, JSONPayload


class AuditAction(enum.Enum):
    """Enumeration of auditable actions."""
    # Receipts
    RECEIPT_ISSUED = "receipt.issued"
    REFUND_ISSUED = "refund.issued"
    RECEIPT_CANCELLED = "receipt.cancelled"
    RECEIPTS_RENUMBERED = "receipts.renumbered"
    REFUND_QUEUED = "refund.queued"

    # Sync
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"


class AuditLog(Base):
    """
    Audit log for tracking fiscal actions.
    Multi-tenant: filtered by tenant_id.
    """
    __tablename__ = 'audit_log'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)  # AuditAction value
    order_id = Column(String(64), nullable=True)
    receipt_id = Column(BigInteger, nullable=True)
    details = Column(JSONPayload, nullable=True)
    user_id = Column(String(128), nullable=True)  # Operator or 'system'
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)

    def __repr__(self):
        return f"<AuditLog {self.action} tenant {self.tenant_id} at {self.created_at}>"

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'order_id': self.order_id,
            'receipt_id': self.receipt_id,
            'details': self.details,
            'user_id': self.user_id,
            'ip_address': self.ip_address,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
