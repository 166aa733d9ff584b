"""
Chunk executors: run one work unit against Azure and persist the results.

One executor class per sync kind. Each knows how to list the entities (and
optional scopes) a run is enumerated over, and how to execute a single unit:

  1. Resolve the unit's entity from the store and acquire fresh tokens.
     Any failure here is a chunk-infrastructure error: the chunk fails.
  2. Run each sub-fetch (fetch + normalize + upsert) in turn. A sub-fetch
     that raises or times out is logged and contributes zero records; it
     never fails the chunk.

Executors are shared by both run modes: chunked runs call execute() once
per invocation (tokens acquired fresh each time), bounded runs call it for
every item with tokens acquired once up front.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from azsync.azure.auth import LOG_ANALYTICS_SCOPE, MANAGEMENT_SCOPE
from azsync.azure.normalizer import (
    RESOURCE_METRICS,
    interval_for_timespan,
    is_sql_resource,
    metric_names_for,
    normalize_cost_rows,
    normalize_metrics,
    normalize_query_stat,
    normalize_recommendation,
    normalize_wait_stat,
)
from azsync.models.azure import (
    AzureResource,
    AzureTenant,
    CostRecord,
    LogAnalyticsWorkspace,
    MetricPoint,
    SqlQueryInsight,
    SqlRecommendation,
    SqlWaitStat,
)
from azsync.models.sync import ChunkRecord
from azsync.sync.enumerator import Entity, monthly_windows
from azsync.sync.storage import upsert_rows

logger = logging.getLogger(__name__)

SubFetch = Tuple[str, Callable[[], Awaitable[int]]]


class ChunkInfrastructureError(RuntimeError):
    """The unit cannot run at all: entity gone, or credentials unavailable."""


@dataclass
class ChunkResult:
    records: int
    success: bool
    error: Optional[str] = None
    failed_sub_fetches: List[str] = field(default_factory=list)


@dataclass
class RunContext:
    """Parameters shared by every unit of one run."""

    tenant_id: int
    start_date: date
    end_date: date
    lookback: timedelta
    # time.monotonic() reading after which no rate-limit backoff starts
    deadline: Optional[float] = None

    @classmethod
    def for_days(cls, tenant_id: int, days: int, today: Optional[date] = None) -> "RunContext":
        today = today or datetime.utcnow().date()
        return cls(
            tenant_id=tenant_id,
            start_date=today - timedelta(days=days),
            end_date=today,
            lookback=timedelta(days=days),
        )

    @property
    def lookback_hours(self) -> int:
        return max(1, int(self.lookback.total_seconds() // 3600))

    @property
    def timespan(self) -> str:
        """ISO 8601 duration for the metrics API: P30D, or PT1H below a day."""
        if self.lookback >= timedelta(days=1):
            return f"P{self.lookback.days}D"
        return f"PT{self.lookback_hours}H"


class ChunkExecutor:
    """Base executor. Subclasses define entities, resolution and sub-fetches."""

    sync_type = ""
    operation = "Syncing"
    token_scopes: Tuple[str, ...] = (MANAGEMENT_SCOPE,)
    max_days = 31
    default_days = 7

    def __init__(self, engine, credentials, client, subfetch_timeout: Optional[float] = None):
        """
        Args:
            engine: SQLAlchemy engine.
            credentials: AzureCredentialProvider (or AsyncMock in tests).
            client: AzureClient (or AsyncMock in tests).
            subfetch_timeout: Seconds before a single sub-fetch is abandoned.
        """
        self.engine = engine
        self.credentials = credentials
        self.client = client
        self.subfetch_timeout = subfetch_timeout

    # ── Enumeration inputs ────────────────────────────────────────────────────

    def list_entities(self, ctx: RunContext) -> List[Entity]:
        raise NotImplementedError

    def list_scopes(self, ctx: RunContext) -> Optional[List[Entity]]:
        """None: this kind has no scope dimension."""
        return None

    # ── Execution ─────────────────────────────────────────────────────────────

    async def acquire_tokens(self, tenant_id: int) -> Dict[str, str]:
        return {
            scope: await self.credentials.get_token(tenant_id, scope)
            for scope in self.token_scopes
        }

    def resolve(self, ctx: RunContext, chunk: ChunkRecord) -> Any:
        """Load whatever the unit needs from the store; raise if it is gone."""
        raise NotImplementedError

    def sub_fetches(
        self, ctx: RunContext, chunk: ChunkRecord, target: Any, tokens: Dict[str, str]
    ) -> List[SubFetch]:
        raise NotImplementedError

    async def execute(
        self,
        ctx: RunContext,
        chunk: ChunkRecord,
        tokens: Optional[Dict[str, str]] = None,
    ) -> ChunkResult:
        """Run one unit. Never raises; failures come back as success=False."""
        try:
            target = self.resolve(ctx, chunk)
            if tokens is None:
                tokens = await self.acquire_tokens(ctx.tenant_id)
        except Exception as exc:
            logger.error("Chunk %d (%s) failed: %s", chunk.chunk_index, chunk.label, exc)
            return ChunkResult(records=0, success=False, error=str(exc))

        result = ChunkResult(records=0, success=True)
        for name, fetch in self.sub_fetches(ctx, chunk, target, tokens):
            count = await self._run_sub_fetch(name, chunk, fetch)
            if count is None:
                result.failed_sub_fetches.append(name)
            else:
                result.records += count
        return result

    async def _run_sub_fetch(
        self, name: str, chunk: ChunkRecord, fetch: Callable[[], Awaitable[int]]
    ) -> Optional[int]:
        try:
            if self.subfetch_timeout:
                return await asyncio.wait_for(fetch(), timeout=self.subfetch_timeout)
            return await fetch()
        except Exception as exc:
            logger.warning("%s for %s failed: %s", name, chunk.label, str(exc) or type(exc).__name__)
            return None

    # ── Shared lookups ────────────────────────────────────────────────────────

    def _get_resource(self, resource_id: Optional[int]) -> AzureResource:
        with Session(self.engine) as s:
            resource = s.get(AzureResource, resource_id) if resource_id is not None else None
        if resource is None:
            raise ChunkInfrastructureError(f"Resource {resource_id} no longer exists")
        return resource

    def _get_tenant(self, tenant_id: int) -> AzureTenant:
        with Session(self.engine) as s:
            tenant = s.get(AzureTenant, tenant_id)
        if tenant is None:
            raise ChunkInfrastructureError(f"Tenant {tenant_id} no longer exists")
        return tenant

    def _tenant_resources(self, tenant_id: int) -> Sequence[AzureResource]:
        with Session(self.engine) as s:
            return s.exec(
                select(AzureResource)
                .where(AzureResource.azure_tenant_id == tenant_id)
                .order_by(AzureResource.id)
            ).all()


def _resource_entity(resource: AzureResource) -> Entity:
    return Entity(id=resource.id, name=resource.name, params={"resource_type": resource.resource_type})


# ─── Metrics ──────────────────────────────────────────────────────────────────

class MetricsChunkExecutor(ChunkExecutor):
    """One unit per resource with metric definitions."""

    sync_type = "metrics"
    operation = "Fetching metrics"
    max_days = 93
    default_days = 30

    def list_entities(self, ctx: RunContext) -> List[Entity]:
        return [
            _resource_entity(r)
            for r in self._tenant_resources(ctx.tenant_id)
            if r.resource_type in RESOURCE_METRICS
        ]

    def resolve(self, ctx: RunContext, chunk: ChunkRecord) -> AzureResource:
        return self._get_resource(chunk.entity_id)

    def sub_fetches(self, ctx, chunk, target: AzureResource, tokens) -> List[SubFetch]:
        metric_names = metric_names_for(target.resource_type)
        if not metric_names:
            logger.info("No metrics defined for %s, skipping", target.resource_type)
            return []

        async def fetch_metrics() -> int:
            raw = await self.client.get_metrics(
                tokens[MANAGEMENT_SCOPE],
                target.azure_resource_id,
                metric_names,
                ctx.timespan,
                interval_for_timespan(ctx.timespan, target.resource_type),
            )
            points = normalize_metrics(raw)
            return upsert_rows(
                self.engine, MetricPoint, ("resource_id", "metric_name", "timestamp_utc"),
                points, resource_id=target.id,
            )

        return [("metrics", fetch_metrics)]


# ─── SQL insights ─────────────────────────────────────────────────────────────

class SqlInsightsChunkExecutor(ChunkExecutor):
    """One unit per (Log Analytics workspace, SQL database) pair."""

    sync_type = "sql-insights"
    operation = "Fetching SQL insights"
    token_scopes = (LOG_ANALYTICS_SCOPE, MANAGEMENT_SCOPE)
    max_days = 31  # Log Analytics default retention
    default_days = 7

    def list_entities(self, ctx: RunContext) -> List[Entity]:
        return [
            _resource_entity(r)
            for r in self._tenant_resources(ctx.tenant_id)
            if is_sql_resource(r.resource_type)
        ]

    def list_scopes(self, ctx: RunContext) -> Optional[List[Entity]]:
        with Session(self.engine) as s:
            workspaces = s.exec(
                select(LogAnalyticsWorkspace)
                .where(LogAnalyticsWorkspace.azure_tenant_id == ctx.tenant_id)
                .order_by(LogAnalyticsWorkspace.id)
            ).all()
        return [
            Entity(id=w.id, name=w.workspace_name, params={"workspace_id": w.workspace_id})
            for w in workspaces
        ]

    def resolve(self, ctx: RunContext, chunk: ChunkRecord):
        resource = self._get_resource(chunk.entity_id)
        with Session(self.engine) as s:
            workspace = s.get(LogAnalyticsWorkspace, chunk.scope_id) if chunk.scope_id else None
        if workspace is None:
            raise ChunkInfrastructureError(f"Workspace {chunk.scope_id} no longer exists")
        tenant = self._get_tenant(ctx.tenant_id)
        return resource, workspace, tenant

    def sub_fetches(self, ctx, chunk, target, tokens) -> List[SubFetch]:
        resource, workspace, tenant = target
        la_token = tokens[LOG_ANALYTICS_SCOPE]
        arm_token = tokens[MANAGEMENT_SCOPE]

        async def fetch_wait_stats() -> int:
            rows = await self.client.get_wait_stats(
                la_token, workspace.workspace_id, resource.name, ctx.lookback_hours
            )
            stats = [s for s in (normalize_wait_stat(r) for r in rows) if s]
            return upsert_rows(
                self.engine, SqlWaitStat, ("resource_id", "wait_type"),
                stats, resource_id=resource.id,
            )

        async def fetch_query_stats() -> int:
            rows = await self.client.get_query_stats(
                la_token, workspace.workspace_id, resource.name, ctx.lookback_hours
            )
            texts: Dict[str, str] = {}
            if any(not r.get("query_text") for r in rows):
                try:
                    texts = await self.client.get_query_texts(arm_token, resource.azure_resource_id)
                except Exception as exc:
                    # Stats are still worth keeping without their SQL text
                    logger.info("Query Store texts unavailable for %s: %s", resource.name, exc)
            stats = [normalize_query_stat(r, texts) for r in rows]
            return upsert_rows(
                self.engine, SqlQueryInsight, ("resource_id", "query_hash"),
                stats, resource_id=resource.id,
            )

        async def fetch_recommendations() -> int:
            recs = await self.client.get_recommendations(
                arm_token, tenant.subscription_id, resource.azure_resource_id
            )
            rows = [normalize_recommendation(r) for r in recs]
            return upsert_rows(
                self.engine, SqlRecommendation, ("resource_id", "recommendation_id"),
                rows, resource_id=resource.id, last_seen_at=datetime.utcnow(),
            )

        return [
            ("wait stats", fetch_wait_stats),
            ("query stats", fetch_query_stats),
            ("recommendations", fetch_recommendations),
        ]


# ─── Costs ────────────────────────────────────────────────────────────────────

class CostChunkExecutor(ChunkExecutor):
    """One unit per calendar-month window of the requested date range."""

    sync_type = "costs"
    operation = "Fetching cost data"
    max_days = 395  # Cost Management keeps 13 months
    default_days = 7

    def __init__(self, engine, credentials, client, subfetch_timeout: Optional[float] = None):
        # 429 backoff alone can outlast a sub-fetch timeout; bounded runs cap
        # it through RunContext.deadline instead
        super().__init__(engine, credentials, client, subfetch_timeout=None)

    def list_entities(self, ctx: RunContext) -> List[Entity]:
        return monthly_windows(ctx.start_date, ctx.end_date)

    def resolve(self, ctx: RunContext, chunk: ChunkRecord) -> AzureTenant:
        if "start" not in chunk.params or "end" not in chunk.params:
            raise ChunkInfrastructureError(f"Chunk {chunk.chunk_index} has no date window")
        return self._get_tenant(ctx.tenant_id)

    def sub_fetches(self, ctx, chunk, target: AzureTenant, tokens) -> List[SubFetch]:
        async def fetch_costs() -> int:
            rows = await self.client.get_costs_with_retry(
                tokens[MANAGEMENT_SCOPE],
                target.subscription_id,
                chunk.params["start"],
                chunk.params["end"],
                deadline=ctx.deadline,
            )
            return upsert_rows(
                self.engine, CostRecord,
                ("tenant_id", "usage_date", "resource_key", "meter_category"),
                normalize_cost_rows(rows), tenant_id=target.id,
            )

        return [("costs", fetch_costs)]


EXECUTOR_CLASSES = {
    cls.sync_type: cls
    for cls in (MetricsChunkExecutor, SqlInsightsChunkExecutor, CostChunkExecutor)
}
