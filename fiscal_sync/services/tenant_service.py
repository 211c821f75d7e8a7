"""Tenant lookups for operator endpoints and CLI commands."""
import logging
from typing import List, Optional

from fiscal_sync.exceptions import BusinessLogicError, NotFoundError, TenantNotFoundError
from fiscal_sync.models import Tenant

logger = logging.getLogger(__name__)


def get_tenant(session, tenant_id: Optional[int] = None, site_id: Optional[str] = None) -> Tenant:
    """
    Load an active tenant by id or by Wix site id.

    Raises:
        BusinessLogicError: neither identifier given
        NotFoundError / TenantNotFoundError: no matching active tenant
    """
    if tenant_id is not None:
        try:
            tenant_id = int(tenant_id)
        except (TypeError, ValueError):
            raise BusinessLogicError(f"Invalid tenant id: {tenant_id!r}")
        tenant = session.query(Tenant).filter_by(id=tenant_id, active=True).first()
        if tenant is None:
            raise NotFoundError(f"Tenant {tenant_id} not found", {'tenant_id': tenant_id})
        return tenant

    if site_id:
        tenant = session.query(Tenant).filter_by(site_id=str(site_id), active=True).first()
        if tenant is None:
            raise TenantNotFoundError(site_id)
        return tenant

    raise BusinessLogicError("tenant_id or site_id is required")


def list_active_tenants(session) -> List[Tenant]:
    return session.query(Tenant).filter_by(active=True).order_by(Tenant.id.asc()).all()
