"""Custom exceptions for the fiscal sync application."""


class FiscalSyncError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['message'] = self.message
        rv['status'] = 'error'
        return rv


class BusinessLogicError(FiscalSyncError):
    """Exception raised for business logic violations."""
    def __init__(self, message, status_code=400, payload=None):
        super().__init__(message, status_code, payload)


class NotFoundError(FiscalSyncError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", payload=None):
        super().__init__(message, 404, payload)


class UnauthorizedError(FiscalSyncError):
    """Raised when a caller lacks permission for an action."""
    def __init__(self, message="Unauthorized access"):
        super().__init__(message, 403)


class TenantNotFoundError(NotFoundError):
    """Raised when no tenant is connected for a Wix site."""
    def __init__(self, site_id):
        super().__init__(f"Tenant not found for site {site_id}", {'site_id': site_id})
        self.site_id = site_id


class UpstreamError(FiscalSyncError):
    """Non-2xx answer (or transport failure) from the Wix API.

    Retryable by re-invoking the sync later, never in a tight loop.
    """
    def __init__(self, message, upstream_status=None, body=None, url=None):
        super().__init__(message, 502, {'upstream_status': upstream_status, 'url': url})
        self.upstream_status = upstream_status
        self.body = body
        self.url = url


class UpstreamAuthError(UpstreamError):
    """Raised when no Wix access token can be obtained for a tenant."""


class EnrichmentMiss(FiscalSyncError):
    """An enrichment step found nothing. Control flow only, never surfaced."""
    def __init__(self, step, order_id=None):
        super().__init__(f"Enrichment step '{step}' found nothing for order {order_id}", 404)
        self.step = step
        self.order_id = order_id


class ReceiptAlreadyExists(FiscalSyncError):
    """Idempotency short-circuit: the (order, type) receipt is already issued."""
    def __init__(self, order_id, receipt_type, receipt_id=None):
        super().__init__(
            f"Receipt {receipt_type} for order {order_id} already exists (#{receipt_id})",
            409,
            {'order_id': order_id, 'type': receipt_type, 'receipt_id': receipt_id}
        )
        self.order_id = order_id
        self.receipt_type = receipt_type
        self.receipt_id = receipt_id


class NumberingConflict(FiscalSyncError):
    """Two writers allocated the same receipt number for a tenant."""
    def __init__(self, tenant_id, order_id=None):
        super().__init__(
            f"Receipt number collision for tenant {tenant_id} (order {order_id})",
            409,
            {'tenant_id': tenant_id, 'order_id': order_id}
        )
        self.tenant_id = tenant_id
        self.order_id = order_id
