"""Tenant model - one connected Wix store."""
from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from fiscal_sync.database import Base
from fiscal_sync.models.types import BigIntPK


class Tenant(Base):
    """Tenant model - each connected Wix site is an isolated data domain."""

    __tablename__ = 'tenant'

    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    slug = Column(String(80), nullable=False, unique=True)  # URL-safe identifier
    name = Column(String(200), nullable=False)  # Display name
    site_id = Column(String(64), nullable=False, unique=True, index=True)  # Wix site id
    instance_id = Column(String(64), nullable=True, index=True)  # Wix app instance id
    refresh_token = Column(String(2048), nullable=True)  # OAuth refresh token (legacy installs)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    company_settings = relationship('CompanySettings', back_populates='tenant', uselist=False)

    def __repr__(self):
        return f"<Tenant(id={self.id}, slug='{self.slug}', site_id='{self.site_id}')>"
