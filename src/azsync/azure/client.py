"""
Async httpx wrapper around the Azure REST endpoints the syncs read from.

Every call takes the bearer token explicitly; the client holds no
credentials. Non-2xx responses raise AzureAPIError (RateLimitedError for
HTTP 429) so callers decide whether a failure is fatal.

Endpoints used:
  - ARM resource list             (per subscription, paginated via nextLink)
  - Log Analytics workspace       (ARM, per workspace, for its customer id)
  - Azure Monitor metrics         (ARM, per resource)
  - Log Analytics query API       (KQL over AzureDiagnostics)
  - SQL Query Store query texts   (ARM, per database)
  - Azure Advisor recommendations (ARM, per subscription, filtered by resource)
  - Cost Management query         (ARM, per subscription, paginated via nextLink)
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from azsync.config import get_settings

logger = logging.getLogger(__name__)

RESOURCES_API_VERSION = "2021-04-01"
WORKSPACE_API_VERSION = "2022-10-01"
METRICS_API_VERSION = "2023-10-01"
QUERY_STORE_API_VERSION = "2021-11-01"
ADVISOR_API_VERSION = "2020-01-01"
COST_API_VERSION = "2023-03-01"

COST_RETRY_ATTEMPTS = 3
COST_RETRY_STEP_SECONDS = 15.0


class AzureAPIError(RuntimeError):
    """Raised when an Azure endpoint returns a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(AzureAPIError):
    """HTTP 429 from an Azure endpoint."""


def extract_database_name(resource_name: str) -> str:
    """'server/db' → 'db'. Log Analytics keys rows by the bare database name."""
    if "/" in resource_name:
        return resource_name.rsplit("/", 1)[-1] or resource_name
    return resource_name


def _wait_stats_query(database: str, lookback_hours: int) -> str:
    return f"""
AzureDiagnostics
| where Category == "QueryStoreWaitStatistics"
| where DatabaseName_s == "{database}"
| where TimeGenerated > ago({lookback_hours}h)
| summarize
    wait_time_ms = sum(todouble(total_query_wait_time_ms_d)),
    wait_count = sum(toint(total_wait_count_d)),
    max_wait_time_ms = max(todouble(max_query_wait_time_ms_d))
  by wait_category_s
| extend avg_wait_time_ms = iif(wait_count > 0, wait_time_ms / wait_count, 0.0)
| project wait_type = wait_category_s, wait_time_ms, wait_count, avg_wait_time_ms, max_wait_time_ms
"""


def _query_stats_query(database: str, lookback_hours: int) -> str:
    return f"""
let QueryText = AzureDiagnostics
| where Category == "QueryStoreQueries"
| where DatabaseName_s == "{database}"
| where TimeGenerated > ago({lookback_hours}h)
| summarize query_sql_text = take_any(query_sql_text_s) by query_hash_s;
AzureDiagnostics
| where Category == "QueryStoreRuntimeStatistics"
| where DatabaseName_s == "{database}"
| where TimeGenerated > ago({lookback_hours}h)
| summarize
    execution_count = sum(toint(count_executions_d)),
    total_cpu_time_ms = sum(todouble(cpu_time_d)) / 1000,
    total_duration_ms = sum(todouble(duration_d)) / 1000,
    total_logical_reads = sum(todouble(logical_io_reads_d)),
    total_logical_writes = sum(todouble(logical_io_writes_d)),
    last_execution_time = max(TimeGenerated)
  by query_hash_s
| lookup kind=leftouter QueryText on query_hash_s
| project query_hash = query_hash_s, query_text = query_sql_text, execution_count,
    total_cpu_time_ms, total_duration_ms, total_logical_reads, total_logical_writes,
    last_execution_time
| order by total_cpu_time_ms desc
| take 50
"""


def _table_rows(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a Log Analytics {"tables": [{"columns", "rows"}]} response."""
    tables = payload.get("tables") or []
    if not tables:
        return []
    columns = [c["name"] for c in tables[0].get("columns", [])]
    return [dict(zip(columns, row)) for row in tables[0].get("rows", [])]


class AzureClient:
    """
    Thin async client over the Azure REST APIs.

    Pass an httpx.AsyncClient to share a connection pool (or a MockTransport
    in tests); otherwise one is created per call.
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None):
        self._http = http
        settings = get_settings()
        self.management_url = settings.azure_management_url.rstrip("/")
        self.log_analytics_url = settings.log_analytics_url.rstrip("/")

    async def _request(self, method: str, url: str, token: str, **kwargs) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        if self._http is not None:
            response = await self._http.request(method, url, headers=headers, **kwargs)
        else:
            async with httpx.AsyncClient(timeout=30.0) as http:
                response = await http.request(method, url, headers=headers, **kwargs)

        if response.status_code == 429:
            raise RateLimitedError(f"429 rate limited: {url}", status_code=429)
        if response.status_code >= 400:
            raise AzureAPIError(
                f"{response.status_code} from {url}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    # ── Inventory ─────────────────────────────────────────────────────────────

    async def list_resources(self, token: str, subscription_id: str) -> List[Dict[str, Any]]:
        """Every resource in the subscription, all pages."""
        url: Optional[str] = (
            f"{self.management_url}/subscriptions/{subscription_id}"
            f"/resources?api-version={RESOURCES_API_VERSION}"
        )
        resources: List[Dict[str, Any]] = []
        while url:
            payload = await self._request("GET", url, token)
            resources.extend(payload.get("value", []))
            url = payload.get("nextLink")
        return resources

    async def get_workspace(self, token: str, workspace_arm_id: str) -> Dict[str, Any]:
        url = f"{self.management_url}{workspace_arm_id}"
        return await self._request("GET", url, token, params={"api-version": WORKSPACE_API_VERSION})

    # ── Monitor ───────────────────────────────────────────────────────────────

    async def get_metrics(
        self,
        token: str,
        resource_arm_id: str,
        metric_names: List[str],
        timespan: str,
        interval: str,
    ) -> Dict[str, Any]:
        """Fetch raw metric timeseries for one resource."""
        url = f"{self.management_url}{resource_arm_id}/providers/microsoft.insights/metrics"
        params = {
            "api-version": METRICS_API_VERSION,
            "metricnames": ",".join(metric_names),
            "timespan": timespan,
            "interval": interval,
        }
        return await self._request("GET", url, token, params=params)

    # ── Log Analytics ─────────────────────────────────────────────────────────

    async def query_workspace(self, token: str, workspace_id: str, query: str) -> List[Dict[str, Any]]:
        url = f"{self.log_analytics_url}/v1/workspaces/{workspace_id}/query"
        payload = await self._request("POST", url, token, json={"query": query})
        return _table_rows(payload)

    async def get_wait_stats(
        self, token: str, workspace_id: str, resource_name: str, lookback_hours: int
    ) -> List[Dict[str, Any]]:
        database = extract_database_name(resource_name)
        return await self.query_workspace(
            token, workspace_id, _wait_stats_query(database, lookback_hours)
        )

    async def get_query_stats(
        self, token: str, workspace_id: str, resource_name: str, lookback_hours: int
    ) -> List[Dict[str, Any]]:
        database = extract_database_name(resource_name)
        return await self.query_workspace(
            token, workspace_id, _query_stats_query(database, lookback_hours)
        )

    # ── ARM: Query Store, Advisor ─────────────────────────────────────────────

    async def get_query_texts(self, token: str, resource_arm_id: str) -> Dict[str, str]:
        """Map query hash → SQL text from the database's Query Store."""
        url = f"{self.management_url}{resource_arm_id}/queries"
        payload = await self._request(
            "GET", url, token, params={"api-version": QUERY_STORE_API_VERSION, "$top": 100}
        )
        texts = {}
        for query in payload.get("value", []):
            props = query.get("properties") or {}
            query_hash = props.get("queryHash") or query.get("queryHash")
            query_text = props.get("queryText") or query.get("queryText")
            if query_hash and query_text:
                texts[query_hash] = query_text
        return texts

    async def get_recommendations(
        self, token: str, subscription_id: str, resource_arm_id: str
    ) -> List[Dict[str, Any]]:
        url = (
            f"{self.management_url}/subscriptions/{subscription_id}"
            "/providers/Microsoft.Advisor/recommendations"
        )
        params = {
            "api-version": ADVISOR_API_VERSION,
            "$filter": f"ResourceId eq '{resource_arm_id}'",
        }
        payload = await self._request("GET", url, token, params=params)
        return payload.get("value", [])

    # ── Cost Management ───────────────────────────────────────────────────────

    async def get_costs(
        self, token: str, subscription_id: str, start: str, end: str
    ) -> List[Dict[str, Any]]:
        """Daily actual cost rows for [start, end], all pages, as column→value dicts."""
        url: Optional[str] = (
            f"{self.management_url}/subscriptions/{subscription_id}"
            f"/providers/Microsoft.CostManagement/query?api-version={COST_API_VERSION}"
        )
        body = {
            "type": "ActualCost",
            "timeframe": "Custom",
            "timePeriod": {"from": start, "to": end},
            "dataset": {
                "granularity": "Daily",
                "aggregation": {"totalCost": {"name": "Cost", "function": "Sum"}},
                "grouping": [
                    {"type": "Dimension", "name": "ResourceId"},
                    {"type": "Dimension", "name": "ResourceGroup"},
                    {"type": "Dimension", "name": "MeterCategory"},
                ],
            },
        }
        rows: List[Dict[str, Any]] = []
        columns: List[str] = []
        while url:
            # Cost Management wants the POST body on every page, nextLink included
            payload = await self._request("POST", url, token, json=body)
            props = payload.get("properties") or {}
            if not columns:
                columns = [c["name"] for c in props.get("columns", [])]
            rows.extend(dict(zip(columns, row)) for row in props.get("rows", []))
            url = props.get("nextLink")
        return rows

    async def get_costs_with_retry(
        self,
        token: str,
        subscription_id: str,
        start: str,
        end: str,
        attempts: int = COST_RETRY_ATTEMPTS,
        step_seconds: float = COST_RETRY_STEP_SECONDS,
        deadline: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """get_costs(), retrying only 429s with linear backoff (15s, 30s, ...).

        Gives up after `attempts` calls; the last 429 is re-raised without a
        final wait. With a `deadline` (a time.monotonic() reading), a backoff
        that would end past it is not started and the 429 is re-raised.
        """
        for attempt in range(1, attempts + 1):
            try:
                return await self.get_costs(token, subscription_id, start, end)
            except RateLimitedError:
                if attempt == attempts:
                    raise
                wait = attempt * step_seconds
                if deadline is not None and time.monotonic() + wait > deadline:
                    logger.info("Cost API rate limited; a %.0fs backoff would pass the deadline", wait)
                    raise
                logger.info(
                    "Cost API rate limited; retry %d/%d in %.0fs", attempt, attempts, wait
                )
                await asyncio.sleep(wait)
        return []
