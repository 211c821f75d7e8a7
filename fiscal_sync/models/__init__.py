"""Models package - exports all SQLAlchemy models."""
# Tenancy
from fiscal_sync.models.tenant import Tenant
from fiscal_sync.models.company_settings import CompanySettings, FiscalSettings, get_fiscal_settings

# Orders and receipts
from fiscal_sync.models.order import WixOrder
from fiscal_sync.models.receipt import (
    Receipt, RECEIPT_TYPE_SALE, RECEIPT_TYPE_REFUND, RECEIPT_STATUS_ISSUED,
    SALE_REFUND_KEY, DEFAULT_REFUND_KEY, DEFAULT_RETURN_PAYMENT_TYPE
)

# Sync bookkeeping
from fiscal_sync.models.sync_state import (
    SyncState, SYNC_STATUS_RUNNING, SYNC_STATUS_PARTIAL, SYNC_STATUS_DONE, SYNC_STATUS_ERROR
)
from fiscal_sync.models.webhook_log import (
    WebhookLog, WEBHOOK_STATUS_RECEIVED, WEBHOOK_STATUS_PROCESSED, WEBHOOK_STATUS_ERROR
)
from fiscal_sync.models.pending_refund import (
    PendingRefund, PENDING_STATUS_PENDING, PENDING_STATUS_PROCESSED, PENDING_STATUS_FAILED
)
from fiscal_sync.models.audit_log import AuditLog, AuditAction

__all__ = [
    'Tenant', 'CompanySettings', 'FiscalSettings', 'get_fiscal_settings',
    'WixOrder',
    'Receipt', 'RECEIPT_TYPE_SALE', 'RECEIPT_TYPE_REFUND', 'RECEIPT_STATUS_ISSUED',
    'SALE_REFUND_KEY', 'DEFAULT_REFUND_KEY', 'DEFAULT_RETURN_PAYMENT_TYPE',
    'SyncState', 'SYNC_STATUS_RUNNING', 'SYNC_STATUS_PARTIAL', 'SYNC_STATUS_DONE', 'SYNC_STATUS_ERROR',
    'WebhookLog', 'WEBHOOK_STATUS_RECEIVED', 'WEBHOOK_STATUS_PROCESSED', 'WEBHOOK_STATUS_ERROR',
    'PendingRefund', 'PENDING_STATUS_PENDING', 'PENDING_STATUS_PROCESSED', 'PENDING_STATUS_FAILED',
    'AuditLog', 'AuditAction',
]
