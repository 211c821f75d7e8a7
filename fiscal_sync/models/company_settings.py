"""Company fiscal settings - owned by the settings UI, read by the receipt engine."""
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import Column, BigInteger, String, Boolean, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK


class CompanySettings(Base):
    """Legal entity and NRA registration data for a tenant."""

    __tablename__ = 'company_settings'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    tenant_id = Column(BigInteger, ForeignKey('tenant.id'), nullable=False, unique=True)
    company_name = Column(String(200), nullable=True)
    eik = Column(String(13), nullable=True)  # Bulgarian unified identification code
    fiscal_store_id = Column(String(64), nullable=True)  # NRA e-shop number (RF...)
    receipts_start_date = Column(Date, nullable=True)
    cod_receipts_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    tenant = relationship('Tenant', back_populates='company_settings')

    def __repr__(self):
        return f"<CompanySettings(tenant_id={self.tenant_id}, fiscal_store_id='{self.fiscal_store_id}')>"


@dataclass(frozen=True)
class FiscalSettings:
    """Read-only snapshot of the settings the receipt engine depends on."""
    fiscal_store_id: Optional[str] = None
    receipts_start_date: Optional[date] = None
    cod_receipts_enabled: bool = False

    @classmethod
    def from_model(cls, model: Optional[CompanySettings]) -> 'FiscalSettings':
        if model is None:
            return cls()
        return cls(
            fiscal_store_id=(model.fiscal_store_id or '').strip() or None,
            receipts_start_date=model.receipts_start_date,
            cod_receipts_enabled=bool(model.cod_receipts_enabled),
        )


def get_fiscal_settings(session, tenant_id: int) -> FiscalSettings:
    """Load the fiscal settings of a tenant (empty settings when unconfigured)."""
    model = session.query(CompanySettings).filter_by(tenant_id=tenant_id).first()
    return FiscalSettings.from_model(model)
