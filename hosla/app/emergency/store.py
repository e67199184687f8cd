"""
store.py — Durable keyed storage for alert records.

Every mutation of an alert is a read-modify-write guarded by the record's
``version``:

    1. load the current document
    2. apply the mutator to a private copy
    3. write it back only if the stored version is still the one we read
       (UPDATE ... WHERE alert_id = :id AND version = :expected)
    4. on a lost race, reload and re-apply (bounded attempts)

This linearises all writers of one alert (request handlers, the escalation
sweep, concurrent fan-outs) across processes, while writes to different
alerts never contend. Mutators must be pure functions of the alert they are
given because they may run more than once.

Backends:
    InMemoryAlertStore — single process, tests and local development
    SqlAlertStore      — SQLAlchemy async (PostgreSQL in production)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hosla.app.core.errors import ConcurrentUpdateError, NotFoundError
from hosla.app.emergency.models import Alert, AlertStatus
from hosla.app.emergency.tables import AlertRow

logger = logging.getLogger(__name__)

# Returns True when it changed the alert, False to leave the record untouched
Mutator = Callable[[Alert], bool]


class AlertStore(ABC):
    """Keyed alert storage with conditional (versioned) updates."""

    def __init__(self, *, max_attempts: int = 5):
        self.max_attempts = max_attempts

    # ── Backend primitives ──

    @abstractmethod
    async def insert(self, alert: Alert) -> Alert:
        ...

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        ...

    @abstractmethod
    async def _compare_and_swap(self, alert: Alert, expected_version: int) -> bool:
        """Persist ``alert`` iff the stored version equals ``expected_version``."""

    @abstractmethod
    async def list_active(self, *, include_test: bool = False) -> List[Alert]:
        ...

    @abstractmethod
    async def list_by_originators(
        self,
        originator_ids: Iterable[str],
        *,
        status: Optional[AlertStatus] = None,
        include_test: bool = False,
    ) -> List[Alert]:
        ...

    # ── Shared behaviour ──

    async def require(self, alert_id: str) -> Alert:
        alert = await self.get(alert_id)
        if alert is None:
            raise NotFoundError("EmergencyAlert", alert_id=alert_id)
        return alert

    async def update(self, alert_id: str, mutator: Mutator) -> Tuple[Alert, bool]:
        """
        Apply ``mutator`` atomically with respect to other writers.

        Returns
        -------
        (alert, changed)
            The stored alert after the call and whether this call wrote it.

        Raises
        ------
        NotFoundError
            Unknown alert id.
        ConcurrentUpdateError
            Lost the race ``max_attempts`` times in a row.
        Any exception raised by the mutator propagates unchanged.
        """
        for attempt in range(1, self.max_attempts + 1):
            current = await self.require(alert_id)
            candidate = current.copy()
            if not mutator(candidate):
                return current, False

            candidate.version = current.version + 1
            candidate.updated_at = datetime.now(timezone.utc)
            if await self._compare_and_swap(candidate, current.version):
                return candidate, True

            logger.debug(
                "Version conflict on alert %s (attempt %d/%d)",
                alert_id, attempt, self.max_attempts,
                extra={"alert_id": alert_id},
            )

        raise ConcurrentUpdateError(alert_id, self.max_attempts)


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryAlertStore(AlertStore):
    """Holds serialised documents so callers never share mutable state."""

    def __init__(self, *, max_attempts: int = 5):
        super().__init__(max_attempts=max_attempts)
        self._docs: Dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def insert(self, alert: Alert) -> Alert:
        async with self._lock:
            if alert.alert_id in self._docs:
                raise ValueError(f"Alert {alert.alert_id} already exists")
            self._docs[alert.alert_id] = alert.to_dict()
        return alert.copy()

    async def get(self, alert_id: str) -> Optional[Alert]:
        doc = self._docs.get(alert_id)
        return Alert.from_dict(doc) if doc else None

    async def _compare_and_swap(self, alert: Alert, expected_version: int) -> bool:
        async with self._lock:
            stored = self._docs.get(alert.alert_id)
            if stored is None or stored["version"] != expected_version:
                return False
            self._docs[alert.alert_id] = alert.to_dict()
            return True

    async def list_active(self, *, include_test: bool = False) -> List[Alert]:
        alerts = [
            Alert.from_dict(d) for d in self._docs.values()
            if d["status"] == AlertStatus.ACTIVE.value
            and (include_test or not d["is_test_alert"])
        ]
        return sorted(alerts, key=lambda a: a.created_at)

    async def list_by_originators(
        self,
        originator_ids: Iterable[str],
        *,
        status: Optional[AlertStatus] = None,
        include_test: bool = False,
    ) -> List[Alert]:
        wanted = set(originator_ids)
        alerts = [
            Alert.from_dict(d) for d in self._docs.values()
            if d["originator_id"] in wanted
            and (status is None or d["status"] == status.value)
            and (include_test or not d["is_test_alert"])
        ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def clear(self) -> None:
        self._docs.clear()


# ═══════════════════════════════════════════════════════════════════════════
# SQL backend
# ═══════════════════════════════════════════════════════════════════════════

class SqlAlertStore(AlertStore):
    """
    Alert documents in the ``emergency_alerts`` table.

    Indexed columns mirror the fields queried by listings and the sweep;
    the JSON document is the full record.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
    ):
        super().__init__(max_attempts=max_attempts)
        self._session_factory = session_factory

    async def insert(self, alert: Alert) -> Alert:
        async with self._session_factory() as session:
            session.add(AlertRow(
                alert_id=alert.alert_id,
                originator_id=alert.originator_id,
                status=alert.status.value,
                is_test_alert=alert.is_test_alert,
                created_at=alert.created_at,
                version=alert.version,
                document=alert.to_dict(),
            ))
            await session.commit()
        return alert.copy()

    async def get(self, alert_id: str) -> Optional[Alert]:
        async with self._session_factory() as session:
            row = await session.get(AlertRow, alert_id)
            return Alert.from_dict(row.document) if row else None

    async def _compare_and_swap(self, alert: Alert, expected_version: int) -> bool:
        stmt = (
            update(AlertRow)
            .where(
                AlertRow.alert_id == alert.alert_id,
                AlertRow.version == expected_version,
            )
            .values(
                status=alert.status.value,
                version=alert.version,
                document=alert.to_dict(),
            )
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def list_active(self, *, include_test: bool = False) -> List[Alert]:
        stmt = select(AlertRow).where(AlertRow.status == AlertStatus.ACTIVE.value)
        if not include_test:
            stmt = stmt.where(AlertRow.is_test_alert.is_(False))
        stmt = stmt.order_by(AlertRow.created_at)
        return await self._fetch(stmt)

    async def list_by_originators(
        self,
        originator_ids: Iterable[str],
        *,
        status: Optional[AlertStatus] = None,
        include_test: bool = False,
    ) -> List[Alert]:
        ids = list(originator_ids)
        if not ids:
            return []
        stmt = select(AlertRow).where(AlertRow.originator_id.in_(ids))
        if status is not None:
            stmt = stmt.where(AlertRow.status == status.value)
        if not include_test:
            stmt = stmt.where(AlertRow.is_test_alert.is_(False))
        stmt = stmt.order_by(AlertRow.created_at.desc())
        return await self._fetch(stmt)

    async def _fetch(self, stmt) -> List[Alert]:
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Alert.from_dict(row.document) for row in rows]
