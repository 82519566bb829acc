"""Persistence for the central limits document."""

import copy
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from metering.clock import Clock, utcnow
from metering.db.manager import DatabaseManager
from metering.db.models import SystemConfig
from metering.policy.types import default_document

logger = logging.getLogger(__name__)


def deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``update`` merged into it, recursing into dicts."""
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class SystemConfigStore:
    """
    Reads and writes the singleton limits document.

    The document keeps the camelCase layout edited by administrators:
    ``rateLimits`` per operation and ``quotas`` per subscription tier,
    plus ``updatedAt``/``updatedBy`` audit fields.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        document_id: str = "api_limits",
        clock: Clock = utcnow,
    ) -> None:
        self._db = db_manager
        self._document_id = document_id
        self._clock = clock

    @property
    def document_id(self) -> str:
        return self._document_id

    def _load(self, session: Session, for_update: bool = False) -> SystemConfig | None:
        stmt = select(SystemConfig).where(SystemConfig.document_id == self._document_id)
        if for_update and not self._db.is_sqlite:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def _read(self, session: Session) -> dict[str, Any] | None:
        row = self._load(session)
        return row.data if row is not None else None

    def _seed(self, session: Session, updated_by: str) -> bool:
        if self._load(session, for_update=True) is not None:
            return False
        now = self._clock()
        data = default_document()
        data["updatedAt"] = now.isoformat()
        data["updatedBy"] = updated_by
        row = SystemConfig(
            document_id=self._document_id,
            updated_by=updated_by,
            created_at=now,
            updated_at=now,
        )
        row.data = data
        session.add(row)
        return True

    def fetch_sync(self) -> dict[str, Any] | None:
        """Read the document, or None if it was never written."""
        return self._db.run_transaction(self._read)

    async def fetch(self) -> dict[str, Any] | None:
        """Read the document, or None if it was never written."""
        return await self._db.run_transaction_async(self._read)

    async def update(
        self,
        rate_limits: dict[str, Any] | None = None,
        quotas: dict[str, Any] | None = None,
        updated_by: str | None = None,
    ) -> dict[str, Any]:
        """
        Merge a partial update into the stored document.

        Args:
            rate_limits: Partial ``rateLimits`` section (camelCase keys)
            quotas: Partial ``quotas`` section (camelCase keys)
            updated_by: Identity recorded with the change

        Returns:
            The full document after the update
        """
        patch: dict[str, Any] = {}
        if rate_limits:
            patch["rateLimits"] = rate_limits
        if quotas:
            patch["quotas"] = quotas

        def work(session: Session) -> dict[str, Any]:
            now = self._clock()
            row = self._load(session, for_update=True)
            if row is None:
                row = SystemConfig(document_id=self._document_id, created_at=now)
                session.add(row)
                current = default_document()
            else:
                current = row.data

            data = deep_merge(current, patch)
            data["updatedAt"] = now.isoformat()
            data["updatedBy"] = updated_by
            row.data = data
            row.updated_by = updated_by
            row.updated_at = now
            return data

        data = await self._db.run_transaction_async(work)
        logger.info(f"Limits document '{self._document_id}' updated by {updated_by or 'unknown'}")
        return data

    def seed_defaults_sync(self, updated_by: str = "system") -> bool:
        """
        Create the document with built-in defaults if it does not exist.

        Returns:
            True if the document was created, False if it already existed
        """
        created = self._db.run_transaction(lambda session: self._seed(session, updated_by))
        self._log_seed(created)
        return created

    async def seed_defaults(self, updated_by: str = "system") -> bool:
        """Async variant of ``seed_defaults_sync``."""
        created = await self._db.run_transaction_async(lambda session: self._seed(session, updated_by))
        self._log_seed(created)
        return created

    def _log_seed(self, created: bool) -> None:
        if created:
            logger.info(f"Seeded limits document '{self._document_id}' with defaults")
        else:
            logger.debug(f"Limits document '{self._document_id}' already exists")
