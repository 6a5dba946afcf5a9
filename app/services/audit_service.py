"""Best-effort audit trail for booking decisions."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import async_session
from app.models.audit_log import AuditLog
from app.utils.background import spawn_detached

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def gateway_actor(provider: str) -> str:
    return f"gateway:{provider.lower()}"


class AuditLogger:
    """Writes audit rows in their own session, off the request path."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session):
        self.session_factory = session_factory

    def record(
        self,
        action: str,
        actor: Optional[str],
        entity: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        return spawn_detached(self._write(action, actor, entity, details or {}), name=f"audit:{action}")

    async def _write(self, action: str, actor: Optional[str], entity: str, details: Dict[str, Any]) -> None:
        entity_type, _, entity_id = entity.partition(":")
        async with self.session_factory() as db:
            db.add(AuditLog(
                actor_id=actor,
                action=action,
                entity=entity_type,
                entity_id=entity_id or None,
                details=details,
            ))
            await db.commit()
        logger.info("Audit log created: actor=%s action=%s entity=%s", actor, action, entity)
