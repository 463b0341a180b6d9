"""Effects that run after the carrier has its reply.

Audit writes never change what the subscriber sees: a write that still
fails after one retry is logged and dropped.
"""

import asyncio
import logging
from typing import Iterable

from tagpay_ussd.audit import AuditLog, TransferAttempt

logger = logging.getLogger(__name__)


async def _record_with_retry(audit: AuditLog, event: TransferAttempt, retry_delay: float) -> bool:
    label = f"Audit {event.transaction_type.value} {event.reference}"
    for attempt in range(2):
        try:
            await audit.record(event)
            return True
        except Exception as e:
            if attempt == 0:
                logger.warning("%s failed (attempt 1), retrying in %ss: %s", label, retry_delay, e)
                await asyncio.sleep(retry_delay)
            else:
                logger.error("%s failed after retry: %s", label, e)
    return False


async def record_audit_events(
    audit: AuditLog | None,
    events: Iterable[TransferAttempt],
    retry_delay: float = 2.0,
) -> int:
    """Write each event to the audit log. Returns how many were written."""
    events = list(events)
    if audit is None:
        if events:
            logger.warning("No audit log configured, dropping %d events", len(events))
        return 0
    written = 0
    for event in events:
        if await _record_with_retry(audit, event, retry_delay):
            written += 1
    return written
