"""Wix order mirror model."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import JSONPayload


class WixOrder(Base):
    """
    Local mirror of an upstream Wix order.

    Keyed by (tenant_id, id); rows are written only through the upsert in
    order_store so the latest upstream view always wins.
    """

    __tablename__ = 'wix_order'

    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), primary_key=True)
    id = Column(String(64), primary_key=True)  # Upstream order id
    number = Column(String(64), nullable=True)
    status = Column(String(64), nullable=True)  # Raw upstream status
    payment_status = Column(String(64), nullable=True)  # Upper-cased
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    currency = Column(String(8), nullable=True)
    subtotal = Column(Numeric(12, 2), nullable=True)
    tax_total = Column(Numeric(12, 2), nullable=True)
    shipping_total = Column(Numeric(12, 2), nullable=True)
    discount_total = Column(Numeric(12, 2), nullable=True)
    total = Column(Numeric(12, 2), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)
    source = Column(String(16), nullable=False, default='backfill')  # webhook | backfill
    raw = Column(JSONPayload, nullable=True)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    synced_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_wix_order_tenant_created', 'tenant_id', 'created_at'),
    )

    def __repr__(self):
        return f"<WixOrder(tenant_id={self.tenant_id}, id='{self.id}', number='{self.number}')>"
