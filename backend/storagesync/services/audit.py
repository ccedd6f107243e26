"""Audit trail for storage connections, file operations and sync conflicts.

Writes are fire-and-forget: a failure to record an entry is logged and never
propagates into the operation being audited.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storagesync.core.logging import get_logger
from storagesync.db.models import AuditLog
from storagesync.db.session import async_session_maker

logger = get_logger(__name__)


class AuditLogger:
    """Persists AuditLog rows, each in its own short session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory or async_session_maker

    async def log(
        self,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        user_id: int | None = None,
        ip_address: str | None = None,
    ) -> None:
        """Record an audit entry. Never raises."""
        try:
            async with self.session_factory() as db:
                db.add(
                    AuditLog(
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        metadata_json=json.dumps(metadata, default=str) if metadata else None,
                        ip_address=ip_address,
                    )
                )
                await db.commit()
        except Exception as e:
            logger.error(
                "audit_log_failed",
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                error=str(e),
            )

    async def log_connection(
        self, user_id: int, provider: str, connected: bool, metadata: dict[str, Any] | None = None
    ) -> None:
        await self.log(
            "storage_connected" if connected else "storage_disconnected",
            "storage_connection",
            provider,
            metadata,
            user_id=user_id,
        )

    async def log_file_operation(
        self,
        operation: str,
        file_id: str,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a file operation as ``file_{operation}``."""
        await self.log(f"file_{operation}", "file", file_id, metadata, user_id=user_id)

    async def log_error(
        self,
        context: str,
        error: BaseException,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self.log(
            "error",
            "system",
            context,
            {
                **(metadata or {}),
                "message": str(error),
                "error_type": type(error).__name__,
            },
            user_id=user_id,
        )

    async def log_conflict(
        self, user_id: int, provider: str, conflicts: list[dict[str, Any]]
    ) -> None:
        await self.log(
            "sync_conflict",
            "sync",
            provider,
            {"conflicts": conflicts, "count": len(conflicts)},
            user_id=user_id,
        )

    # ========== Queries ==========

    async def get_user_logs(self, user_id: int, limit: int = 50, offset: int = 0) -> list[AuditLog]:
        return await self._query(AuditLog.user_id == user_id, limit=limit, offset=offset)

    async def get_logs_by_action(self, action: str, limit: int = 50, offset: int = 0) -> list[AuditLog]:
        return await self._query(AuditLog.action == action, limit=limit, offset=offset)

    async def get_resource_logs(
        self, resource_type: str, resource_id: str, limit: int = 50, offset: int = 0
    ) -> list[AuditLog]:
        return await self._query(
            AuditLog.resource_type == resource_type,
            AuditLog.resource_id == resource_id,
            limit=limit,
            offset=offset,
        )

    async def _query(self, *criteria: Any, limit: int, offset: int) -> list[AuditLog]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AuditLog)
                .where(*criteria)
                .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())
