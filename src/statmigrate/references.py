"""
Legacy reference resolution.

Source documents point at publishers, missions, campaigns, widgets and
clicks by their legacy (document store) ids. The analytics tables need the
relational primary keys instead. ReferenceResolver bulk-loads the small
reference tables once per run, loads missions and clicks per batch, and
falls back to a point query (retried on transient errors) when a mission
or click is not in the cache.

A miss is never an error here: the caller decides what a missing
reference means for the record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from statmigrate.models import ReferenceMap, mission_key
from statmigrate.observability import Tracer, create_tracer
from statmigrate.observability.attributes import ATTR_BATCH_SIZE, ATTR_REFERENCE_KIND
from statmigrate.relational import execute_with_connection
from statmigrate.relational.schema import campaign, click, mission, partner, widget
from statmigrate.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

DEFAULT_CLICK_LOOKBACK_DAYS = 62
IN_CLAUSE_CHUNK = 1000


def _chunks(values: list[str], size: int = IN_CLAUSE_CHUNK) -> Iterable[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def _clean_ids(values: Iterable[Any]) -> list[str]:
    return sorted({str(v) for v in values if v is not None and str(v) != ""})


class ReferenceResolver:
    """
    Run-scoped cache of legacy id to primary key mappings.

    Args:
        conn: Analytics store engine or connection
        click_lookback_days: Preload clicks created in this many past days
            (None skips the click preload)
        retry_config: Backoff for point lookups
        clock: Returns the current time (for the click lookback window)

    Example:
        >>> resolver = ReferenceResolver(engine)
        >>> await resolver.preload()
        >>> await resolver.load_missions({"client-1"})
        >>> mission_id = await resolver.resolve_mission("client-1", "pub-1")
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        click_lookback_days: int | None = None,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.conn = conn
        self.maps = ReferenceMap()
        self._click_lookback_days = click_lookback_days
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def _fetch_pairs(self, query: Select) -> list[tuple[str, str]]:
        async with execute_with_connection(self.conn, transactional=False) as conn:
            result = await conn.execute(query)
            return [(str(row[0]), str(row[1])) for row in result.fetchall() if row[1] is not None]

    async def preload(self) -> None:
        """
        Bulk-load partner, campaign and widget maps, and recent clicks.

        Each map is keyed by legacy id and holds the primary key.
        """
        with self._tracer.span("statmigrate.references.preload", {}):
            for kind, table, target in (
                ("partner", partner, self.maps.partners),
                ("campaign", campaign, self.maps.campaigns),
                ("widget", widget, self.maps.widgets),
            ):
                rows = await self._fetch_pairs(select(table.c.id, table.c.old_id))
                target.update({old_id: pk for pk, old_id in rows})
                logger.info(
                    "Loaded %d %s references",
                    len(rows),
                    kind,
                    extra={"reference_kind": kind, "count": len(rows)},
                )

            if self._click_lookback_days is not None:
                since = self._clock() - timedelta(days=self._click_lookback_days)
                rows = await self._fetch_pairs(
                    select(click.c.id, click.c.old_id).where(click.c.created_at >= since)
                )
                self.maps.clicks.update({old_id: pk for pk, old_id in rows})
                logger.info(
                    "Loaded %d click references from the last %d days",
                    len(rows),
                    self._click_lookback_days,
                    extra={"reference_kind": "click", "count": len(rows)},
                )

    async def load_missions(self, client_ids: Iterable[Any]) -> int:
        """
        Add the missions of the given client ids to the composite map.

        Returns:
            Number of missions loaded
        """
        ids = _clean_ids(client_ids)
        loaded = 0
        with self._tracer.span(
            "statmigrate.references.load_missions",
            {ATTR_REFERENCE_KIND: "mission", ATTR_BATCH_SIZE: len(ids)},
        ):
            for chunk in _chunks(ids):
                query = (
                    select(mission.c.id, mission.c.client_id, mission.c.old_id, partner.c.old_id)
                    .select_from(mission.join(partner, mission.c.partner_id == partner.c.id))
                    .where(mission.c.client_id.in_(chunk))
                )
                async with execute_with_connection(self.conn, transactional=False) as conn:
                    result = await conn.execute(query)
                    for mission_id, client_id, legacy_id, partner_old_id in result.fetchall():
                        self.maps.missions[mission_key(client_id, partner_old_id)] = mission_id
                        if legacy_id is not None:
                            self.maps.legacy_missions[str(legacy_id)] = mission_id
                        loaded += 1
        return loaded

    async def load_legacy_missions(self, legacy_ids: Iterable[Any]) -> int:
        """
        Add the missions with the given legacy ids to the legacy map.

        Returns:
            Number of missions loaded
        """
        ids = [i for i in _clean_ids(legacy_ids) if i not in self.maps.legacy_missions]
        loaded = 0
        for chunk in _chunks(ids):
            rows = await self._fetch_pairs(
                select(mission.c.id, mission.c.old_id).where(mission.c.old_id.in_(chunk))
            )
            self.maps.legacy_missions.update({old_id: pk for pk, old_id in rows})
            loaded += len(rows)
        return loaded

    async def load_clicks(self, legacy_ids: Iterable[Any]) -> int:
        """
        Add the clicks with the given legacy ids to the click map.

        Returns:
            Number of clicks loaded
        """
        ids = [i for i in _clean_ids(legacy_ids) if i not in self.maps.clicks]
        loaded = 0
        for chunk in _chunks(ids):
            rows = await self._fetch_pairs(
                select(click.c.id, click.c.old_id).where(click.c.old_id.in_(chunk))
            )
            self.maps.clicks.update({old_id: pk for pk, old_id in rows})
            loaded += len(rows)
        return loaded

    def partner(self, legacy_id: Any) -> str | None:
        if legacy_id is None:
            return None
        return self.maps.partners.get(str(legacy_id))

    def campaign(self, legacy_id: Any) -> str | None:
        if legacy_id is None:
            return None
        return self.maps.campaigns.get(str(legacy_id))

    def widget(self, legacy_id: Any) -> str | None:
        if legacy_id is None:
            return None
        return self.maps.widgets.get(str(legacy_id))

    async def _point_lookup(self, query: Select, kind: str) -> str | None:
        async def lookup() -> str | None:
            async with execute_with_connection(self.conn, transactional=False) as conn:
                result = await conn.execute(query.limit(1))
                row = result.fetchone()
                return str(row[0]) if row else None

        with self._tracer.span(
            "statmigrate.references.point_lookup", {ATTR_REFERENCE_KIND: kind}
        ):
            return await retry_async(
                lookup,
                config=self._retry_config,
                operation_name=f"lookup_{kind}",
            )

    async def resolve_mission(
        self,
        client_id: Any,
        publisher_id: Any,
        *,
        legacy_id: Any = None,
        prefer_legacy: bool = False,
    ) -> str | None:
        """
        Resolve a mission reference to its primary key.

        The composite map (client id within the publisher's catalogue) and
        the legacy id map are consulted first, in the order given by
        ``prefer_legacy``. On a miss, one point query per available key is
        issued in the same order and a hit is cached.

        Args:
            client_id: Mission id in the publisher's catalogue
            publisher_id: Legacy id of the publisher owning the mission
            legacy_id: Mission legacy id
            prefer_legacy: Try the legacy id before the composite key

        Returns:
            Mission primary key, or None when nothing matches
        """
        composite = (
            mission_key(client_id, publisher_id)
            if client_id not in (None, "") and publisher_id not in (None, "")
            else None
        )
        legacy = str(legacy_id) if legacy_id not in (None, "") else None

        strategies: list[tuple[str, str]] = []
        if composite is not None:
            strategies.append(("composite", composite))
        if legacy is not None:
            strategies.append(("legacy", legacy))
        if prefer_legacy:
            strategies.reverse()

        for strategy, key in strategies:
            cache = self.maps.missions if strategy == "composite" else self.maps.legacy_missions
            if key in cache:
                return cache[key]

        for strategy, key in strategies:
            if strategy == "composite":
                query = (
                    select(mission.c.id)
                    .select_from(mission.join(partner, mission.c.partner_id == partner.c.id))
                    .where(mission.c.client_id == str(client_id))
                    .where(partner.c.old_id == str(publisher_id))
                )
                found = await self._point_lookup(query, "mission")
                if found is not None:
                    self.maps.missions[key] = found
                    return found
            else:
                query = select(mission.c.id).where(mission.c.old_id == key)
                found = await self._point_lookup(query, "mission")
                if found is not None:
                    self.maps.legacy_missions[key] = found
                    return found
        return None

    async def resolve_click(self, legacy_id: Any) -> str | None:
        """
        Resolve a legacy click id to the ``click`` row primary key.

        Returns:
            Click primary key, or None when the click was never exported
        """
        if legacy_id in (None, ""):
            return None
        key = str(legacy_id)
        if key in self.maps.clicks:
            return self.maps.clicks[key]
        found = await self._point_lookup(
            select(click.c.id).where(click.c.old_id == key), "click"
        )
        if found is not None:
            self.maps.clicks[key] = found
        return found


__all__ = [
    "DEFAULT_CLICK_LOOKBACK_DAYS",
    "ReferenceResolver",
]
