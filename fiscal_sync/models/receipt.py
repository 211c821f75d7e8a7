"""Fiscal receipt model."""
from sqlalchemy import (
    Column, BigInteger, Integer, String, Numeric, DateTime, ForeignKey,
    UniqueConstraint, Index
)
from fiscal_sync.database import Base
from fiscal_sync.models.types import JSONPayload

RECEIPT_TYPE_SALE = 'sale'
RECEIPT_TYPE_REFUND = 'refund'
RECEIPT_STATUS_ISSUED = 'issued'

SALE_REFUND_KEY = 'sale'
DEFAULT_REFUND_KEY = 'full'

# NRA return payment code: 2 = bank transfer / card reversal
DEFAULT_RETURN_PAYMENT_TYPE = 2


class Receipt(Base):
    """
    Fiscal receipt (sale or refund).

    id is the receipt number and is unique per tenant only. The number is
    allocated inside the INSERT statement (MAX(id)+1) so numbering stays
    gap-free; the unique key below makes issuance idempotent.
    """

    __tablename__ = 'receipt'

    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), primary_key=True)
    id = Column(BigInteger, primary_key=True, autoincrement=False)
    order_id = Column(String(64), nullable=False)
    type = Column(String(16), nullable=False)  # sale | refund
    issued_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, default=RECEIPT_STATUS_ISSUED)
    payload = Column(JSONPayload, nullable=True)  # Order snapshot at issue time
    reference_receipt_id = Column(BigInteger, nullable=True)  # Refund -> sale receipt
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_key = Column(String(64), nullable=False, default=SALE_REFUND_KEY)
    return_payment_type = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'order_id', 'type', 'refund_key', name='uq_receipt_order_type_key'),
        Index('idx_receipt_tenant_issued', 'tenant_id', 'issued_at'),
    )

    @property
    def is_sale(self) -> bool:
        return self.type == RECEIPT_TYPE_SALE

    @property
    def is_refund(self) -> bool:
        return self.type == RECEIPT_TYPE_REFUND

    def to_dict(self):
        return {
            'id': self.id,
            'order_id': self.order_id,
            'type': self.type,
            'status': self.status,
            'issued_at': self.issued_at.isoformat() if self.issued_at else None,
            'reference_receipt_id': self.reference_receipt_id,
            'refund_amount': str(self.refund_amount) if self.refund_amount is not None else None,
            'refund_key': self.refund_key,
            'return_payment_type': self.return_payment_type,
        }

    def __repr__(self):
        return f"<Receipt(tenant_id={self.tenant_id}, id={self.id}, type='{self.type}', order_id='{self.order_id}')>"
