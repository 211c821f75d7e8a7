"""
Payment enrichment.

Fills the transaction reference, payment id, paid date, payment summary and
delivery method of an order from whichever Wix source has them. Every step
is optional: a step that finds nothing (EnrichmentMiss) or fails upstream
(UpstreamError) is logged and the next step runs.

Results are merged into raw['metadata']; nothing else in the payload is
touched, so running the resolver twice yields the same payload.
"""
import copy
import logging
from typing import Any, Dict, List, Optional

from fiscal_sync.exceptions import EnrichmentMiss, UpstreamError, UpstreamAuthError
from fiscal_sync.services.order_normalizer import ORDER_ID_PATHS, first_path, resolve_order_number
from fiscal_sync.services.payment_extractors import (
    extract_delivery_method,
    extract_paid_at_from_payment,
    extract_payment_id,
    extract_payment_summary_from_payment,
    extract_transaction_ref,
    extract_transaction_ref_from_payment,
    index_payments,
    is_cod_order,
    is_provider_id,
    lookup_indexed_payment,
    needs_enrichment,
)

logger = logging.getLogger(__name__)

METADATA_KEY = 'metadata'


class PaymentEnrichmentResolver:
    """Runs the enrichment steps for one sync invocation."""

    def __init__(self, client, batch_payments: Optional[List[Dict[str, Any]]] = None):
        self.client = client
        self.tenant = None
        self._index = index_payments(batch_payments) if batch_payments else {}

    def set_batch_payments(self, batch_payments: Optional[List[Dict[str, Any]]]) -> None:
        self._index = index_payments(batch_payments) if batch_payments else {}

    def enrich(self, tenant, raw: Dict[str, Any], batch_payments: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Return a copy of `raw` with enrichment results merged into its metadata."""
        self.tenant = tenant
        if batch_payments is not None:
            self.set_batch_payments(batch_payments)

        if not isinstance(raw, dict):
            return raw

        order_raw = copy.deepcopy(raw)
        order_id = first_path(order_raw, ORDER_ID_PATHS)
        if not order_id:
            return order_raw
        order_id = str(order_id)

        if needs_enrichment(order_raw):
            self._run_step('order_detail', order_id, self._merge_order_detail, order_raw, order_id)

        delivery_method = extract_delivery_method(order_raw)
        if delivery_method:
            _merge_metadata(order_raw, deliveryMethod=delivery_method)

        if self._missing_payment_data(order_raw):
            self._run_step('batch_payments', order_id, self._from_batch, order_raw, order_id)

        if not extract_transaction_ref(order_raw):
            self._run_step('transaction_ref', order_id, self._from_transactions, order_raw, order_id)

        if self._missing_payment_data(order_raw) and not extract_payment_id(order_raw):
            self._run_step('payment_record', order_id, self._from_payment_record, order_raw, order_id)

        if self._missing_payment_data(order_raw) and extract_payment_id(order_raw):
            self._run_step('payment_by_id', order_id, self._from_payment_by_id, order_raw, order_id)

        _merge_metadata(order_raw, isCod=is_cod_order(order_raw))
        return order_raw

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, step: str, order_id: str, fn, *args) -> None:
        try:
            fn(*args)
        except EnrichmentMiss as e:
            logger.debug(f"[ENRICH] {e.message}")
        except UpstreamAuthError:
            raise
        except UpstreamError as e:
            logger.warning(f"[ENRICH] Step '{step}' failed for order {order_id}: {e.message}")

    def _merge_order_detail(self, order_raw: Dict[str, Any], order_id: str) -> None:
        detail = self.client.fetch_order_detail(self.tenant, order_id)
        if not detail:
            raise EnrichmentMiss('order_detail', order_id)
        metadata = order_raw.get(METADATA_KEY)
        order_raw.update(detail)
        # Upstream detail never owns our metadata key
        if isinstance(metadata, dict):
            order_raw[METADATA_KEY] = metadata
        else:
            order_raw.pop(METADATA_KEY, None)

    def _from_batch(self, order_raw: Dict[str, Any], order_id: str) -> None:
        if not self._index:
            raise EnrichmentMiss('batch_payments', order_id)
        payment = lookup_indexed_payment(self._index, order_id, resolve_order_number(order_raw))
        if not payment:
            raise EnrichmentMiss('batch_payments', order_id)
        self._merge_payment(order_raw, payment)

    def _from_transactions(self, order_raw: Dict[str, Any], order_id: str) -> None:
        ref = self.client.fetch_transaction_ref_for_order(self.tenant, order_id)
        if not ref:
            raise EnrichmentMiss('transaction_ref', order_id)
        _merge_metadata(order_raw, transactionRef=ref)

    def _from_payment_record(self, order_raw: Dict[str, Any], order_id: str) -> None:
        record = self.client.fetch_payment_record_for_order(self.tenant, order_id, resolve_order_number(order_raw))
        _merge_metadata(order_raw, paymentRecordsFound=1 if record.found else 0,
                        keep_existing=('paymentRecordsFound',))
        if not record.found:
            raise EnrichmentMiss('payment_record', order_id)
        _merge_metadata(
            order_raw,
            paymentRecord=record.payment,
            paymentId=record.payment_id,
            transactionRef=record.transaction_ref,
            paidAt=record.paid_at,
            paymentSummary=record.summary,
            keep_existing=('transactionRef',),
        )

    def _from_payment_by_id(self, order_raw: Dict[str, Any], order_id: str) -> None:
        payment_id = extract_payment_id(order_raw)
        payment = self.client.fetch_payment_by_id(self.tenant, payment_id)
        if not payment:
            raise EnrichmentMiss('payment_by_id', order_id)
        self._merge_payment(order_raw, payment)

    def _merge_payment(self, order_raw: Dict[str, Any], payment: Dict[str, Any]) -> None:
        _merge_metadata(
            order_raw,
            paymentId=payment.get('id') or payment.get('_id'),
            transactionRef=extract_transaction_ref_from_payment(payment),
            paidAt=extract_paid_at_from_payment(payment),
            paymentSummary=extract_payment_summary_from_payment(payment),
            paymentRecordsFound=1,
            keep_existing=('transactionRef',),
        )

    @staticmethod
    def _missing_payment_data(order_raw: Dict[str, Any]) -> bool:
        metadata = order_raw.get(METADATA_KEY) if isinstance(order_raw.get(METADATA_KEY), dict) else {}
        return (
            not extract_transaction_ref(order_raw)
            or not metadata.get('paymentSummary')
            or not metadata.get('paidAt')
        )


def _merge_metadata(order_raw: Dict[str, Any], keep_existing=(), **values) -> None:
    """
    Merge non-null values into raw['metadata'].

    Keys in keep_existing are only filled, never replaced. The one exception
    is a gateway id (pi_/ch_/pay_) for transactionRef, which always replaces an
    internal Wix reference.
    """
    metadata = order_raw.get(METADATA_KEY)
    if not isinstance(metadata, dict):
        metadata = {}
    for key, value in values.items():
        if value is None:
            continue
        if key in keep_existing and metadata.get(key):
            if not _upgrades_transaction_ref(key, metadata[key], value):
                continue
        metadata[key] = value
    order_raw[METADATA_KEY] = metadata


def _upgrades_transaction_ref(key: str, existing: Any, value: Any) -> bool:
    return key == 'transactionRef' and is_provider_id(value) and not is_provider_id(existing)
