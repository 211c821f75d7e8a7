"""Sync cursor state - one row per tenant."""
import logging
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError

from fiscal_sync.models import SyncState, SYNC_STATUS_DONE, SYNC_STATUS_PARTIAL

logger = logging.getLogger(__name__)

_UNSET = object()


def get_sync_state(session, tenant_id: int) -> Optional[SyncState]:
    return session.query(SyncState).filter_by(tenant_id=tenant_id).first()


def update_sync_state(
    session,
    tenant_id: int,
    cursor=_UNSET,
    status: Optional[str] = None,
    last_error=_UNSET,
    start_date=_UNSET,
    pages_done: Optional[int] = None,
) -> SyncState:
    """
    Create or update the tenant's sync state. Only the arguments passed are
    written, so `cursor=None` clears the cursor while omitting it keeps it.
    Caller commits.
    """
    state = get_sync_state(session, tenant_id)
    if state is None:
        try:
            with session.begin_nested():
                state = SyncState(tenant_id=tenant_id, status=SYNC_STATUS_DONE, pages_done=0)
                session.add(state)
                session.flush()
        except IntegrityError:
            # A concurrent run created the row first
            state = get_sync_state(session, tenant_id)

    if cursor is not _UNSET:
        state.cursor = str(cursor) if cursor is not None else None
    if status is not None:
        state.status = status
    if last_error is not _UNSET:
        state.last_error = last_error[:2000] if last_error else None
    if start_date is not _UNSET:
        state.start_date = start_date
    if pages_done is not None:
        state.pages_done = pages_done

    session.flush()
    logger.debug(f"[SYNC] State tenant {tenant_id}: status={state.status} cursor={state.cursor}")
    return state


def resume_offset(state: Optional[SyncState], start_date: date) -> Optional[int]:
    """Offset to resume from when the stored run is partial for the same window."""
    if state is None or state.status != SYNC_STATUS_PARTIAL or not state.cursor:
        return None
    if state.start_date != start_date:
        return None
    try:
        return int(state.cursor)
    except ValueError:
        logger.warning(f"[SYNC] Ignoring non-numeric cursor '{state.cursor}' for tenant {state.tenant_id}")
        return None
