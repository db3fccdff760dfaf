"""Best-effort audit trail for administrative actions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from bonus_ledger.database import unit_of_work
from bonus_ledger.db.models import AuditLog
from bonus_ledger.time_utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


async def record_audit_event(
    actor_id: int | None,
    action: str,
    entity_type: str,
    entity_id: str | None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    *,
    db: AsyncSession | None = None,
) -> bool:
    """Write an audit row. Returns False if the write failed.

    Without ``db`` the row gets its own transaction. With ``db`` it is
    written in a savepoint of the caller's transaction, so it commits or
    rolls back together with the audited change.

    Failures are logged and never raised, so the audited mutation stands.
    """
    try:
        entry = AuditLog(
            user_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
            created_at=utcnow(),
        )
        if db is not None:
            async with db.begin_nested():
                db.add(entry)
        else:
            async with unit_of_work() as session:
                session.add(entry)
    except Exception:
        logger.warning("audit_write_failed", action=action, entity_type=entity_type, entity_id=entity_id, exc_info=True)
        return False
    return True
