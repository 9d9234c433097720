"""Audit sink: fire-and-observe recording of signing events.

A failed audit write is logged and swallowed. Losing an audit line is
bad; failing a signature that was already rendered and hashed because
the log was unavailable is worse.
"""

import logging
from typing import Optional, Protocol, Union

from .models import AuditAction, AuditEntry, AuditMeta
from .repository import AuditLog

logger = logging.getLogger("signtrail.audit")


class AuditSink(Protocol):
    async def record(
        self,
        action: Union[AuditAction, str],
        actor_id: Optional[str],
        target_id: Optional[str],
        description: str,
        request_context: Optional[AuditMeta] = None,
    ) -> None: ...


class StoreAuditSink:
    """Writes audit entries into any ``AuditLog`` store.

    Args:
        log: Store receiving the entries.
    """

    def __init__(self, log: AuditLog) -> None:
        self._log = log

    async def record(
        self,
        action: Union[AuditAction, str],
        actor_id: Optional[str],
        target_id: Optional[str],
        description: str,
        request_context: Optional[AuditMeta] = None,
    ) -> None:
        context = request_context or AuditMeta()
        await self._log.append_audit(
            AuditEntry(
                action=AuditAction(action),
                actor_id=actor_id,
                target_id=str(target_id) if target_id is not None else None,
                description=description,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
        )


async def record_safely(
    sink: Optional[AuditSink],
    action: AuditAction,
    actor_id: Optional[str],
    target_id: Optional[str],
    description: str,
    request_context: Optional[AuditMeta] = None,
) -> bool:
    """Record an audit event without letting a sink failure escape.

    Returns:
        True if the sink accepted the entry.
    """
    if sink is None:
        return False
    try:
        await sink.record(action, actor_id, target_id, description, request_context)
    except Exception as exc:
        logger.warning("Audit %s for %s not recorded: %s", action.value, target_id, exc)
        return False
    return True
