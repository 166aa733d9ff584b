"""
Azure API response normalizer.

Converts raw dicts from AzureClient into clean field dicts that map directly
onto SQLModel columns. No DB access here: callers (the chunk executors and
bounded syncs) handle persistence.

All functions return plain dicts so they're easy to test without any SQLModel
or DB dependencies.
"""
import hashlib
from datetime import date, datetime
from typing import Any, Dict, List, Optional

# Metric names synced per resource type. Types not listed have no metrics.
RESOURCE_METRICS: Dict[str, List[str]] = {
    # Web Apps report CpuTime (seconds) and working set (bytes), not percentages
    "Microsoft.Web/sites": ["CpuTime", "AverageMemoryWorkingSet", "Requests", "AverageResponseTime", "Http5xx"],
    "Microsoft.Sql/servers/databases": ["cpu_percent", "dtu_consumption_percent", "storage_percent", "connection_successful"],
    "Microsoft.Compute/virtualMachines": ["Percentage CPU", "Network In Total", "Network Out Total", "Disk Read Bytes", "Disk Write Bytes"],
    "Microsoft.Storage/storageAccounts": ["UsedCapacity", "Transactions", "Ingress", "Egress"],
}

# Resource types that reject grains finer than this
RESOURCE_MIN_INTERVALS: Dict[str, str] = {
    "Microsoft.Storage/storageAccounts": "PT1H",
}

SQL_RESOURCE_MARKERS = ("sql", "database")


def metric_names_for(resource_type: str) -> List[str]:
    return RESOURCE_METRICS.get(resource_type, [])


def is_sql_resource(resource_type: str) -> bool:
    lowered = resource_type.lower()
    return any(marker in lowered for marker in SQL_RESOURCE_MARKERS)


def interval_for_timespan(timespan: str, resource_type: Optional[str] = None) -> str:
    """Pick a metric grain: coarser for longer lookbacks.

    Day timespans ("P30D"): 30+ days → PT1H, 7+ days → PT15M, else PT5M.
    Hour timespans ("PT1H") always use PT5M.
    """
    if resource_type and resource_type in RESOURCE_MIN_INTERVALS:
        return RESOURCE_MIN_INTERVALS[resource_type]
    if timespan.startswith("P") and not timespan.startswith("PT"):
        days = int(timespan[1:].rstrip("D"))
        if days >= 30:
            return "PT1H"
        if days >= 7:
            return "PT15M"
    return "PT5M"


def parse_azure_datetime(value: Any) -> Optional[datetime]:
    """Parse '2026-01-12T10:05:00Z' / '...+00:00' / '...1234567Z' into naive UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    s = str(value).strip().replace("Z", "")
    if "+" in s[10:]:
        s = s[: 10 + s[10:].index("+")]
    base = s.split(".")[0]
    try:
        return datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None


def parse_azure_date(value: Any) -> Optional[date]:
    """Cost API dates arrive as 20260112 (int), '20260112', or ISO strings."""
    if value is None or value == "":
        return None
    s = str(value).strip()
    if len(s) == 8 and s.isdigit():
        return date(int(s[:4]), int(s[4:6]), int(s[6:8]))
    try:
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def normalize_metrics(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten metrics API value[].timeseries[].data[] into MetricPoint field dicts.

    Points with neither an average nor a total are empty grains and dropped.
    """
    points = []
    for metric in raw.get("value") or []:
        name_obj = metric.get("name") or {}
        metric_name = name_obj.get("value")
        if not metric_name:
            continue
        namespace = metric.get("namespace") or name_obj.get("localizedValue") or "azure.metrics"
        for series in metric.get("timeseries") or []:
            for point in series.get("data") or []:
                if point.get("average") is None and point.get("total") is None:
                    continue
                timestamp = parse_azure_datetime(point.get("timeStamp"))
                if timestamp is None:
                    continue
                points.append({
                    "metric_name": metric_name,
                    "metric_namespace": namespace,
                    "timestamp_utc": timestamp,
                    "average": point.get("average"),
                    "minimum": point.get("minimum"),
                    "maximum": point.get("maximum"),
                    "total": point.get("total"),
                    "count": point.get("count"),
                    "unit": metric.get("unit"),
                })
    return points


def normalize_wait_stat(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    wait_type = row.get("wait_type")
    if not wait_type:
        return None
    return {
        "wait_type": str(wait_type),
        "wait_time_ms": float(row.get("wait_time_ms") or 0),
        "wait_count": int(row.get("wait_count") or 0),
        "avg_wait_time_ms": float(row.get("avg_wait_time_ms") or 0),
        "max_wait_time_ms": float(row.get("max_wait_time_ms") or 0),
    }


def normalize_query_stat(row: Dict[str, Any], texts: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Query stats row → SqlQueryInsight fields; missing text falls back to Query Store."""
    query_hash = str(row.get("query_hash") or "unknown")
    query_text = row.get("query_text") or None
    if not query_text and texts:
        query_text = texts.get(query_hash)

    executions = int(row.get("execution_count") or 0)
    totals = {
        "total_cpu_time_ms": float(row.get("total_cpu_time_ms") or 0),
        "total_duration_ms": float(row.get("total_duration_ms") or 0),
        "total_logical_reads": float(row.get("total_logical_reads") or 0),
        "total_logical_writes": float(row.get("total_logical_writes") or 0),
    }
    fields: Dict[str, Any] = {
        "query_hash": query_hash,
        "query_text": query_text,
        "execution_count": executions,
        "last_execution_time": parse_azure_datetime(row.get("last_execution_time")),
        **totals,
    }
    for total_key, value in totals.items():
        avg_key = "avg_" + total_key[len("total_"):]
        fields[avg_key] = value / executions if executions else 0.0
    return fields


def normalize_recommendation(rec: Dict[str, Any]) -> Dict[str, Any]:
    props = rec.get("properties") or {}
    short = props.get("shortDescription") or {}
    rec_id = rec.get("id") or rec.get("name")
    if not rec_id:
        # Stable synthetic key so re-syncs update instead of duplicating
        rec_id = "synthetic-" + hashlib.sha1(repr(sorted(props.items())).encode()).hexdigest()[:16]
    return {
        "recommendation_id": str(rec_id),
        "name": short.get("problem") or rec.get("name") or "Recommendation",
        "category": props.get("category"),
        "impact": props.get("impact"),
        "problem": short.get("problem"),
        "solution": short.get("solution"),
        "is_resolved": False,
    }


def normalize_cost_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Cost rows → CostRecord fields, summing rows that share a unique key.

    The API can return several rows for the same (date, resource, category)
    once sub-meter dimensions are collapsed; summing keeps the upsert key unique.
    """
    merged: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        usage_date = parse_azure_date(row.get("UsageDate"))
        if usage_date is None:
            continue
        resource_key = (row.get("ResourceId") or "").lower()
        category = row.get("MeterCategory") or ""
        key = (usage_date, resource_key, category)
        cost = float(row.get("Cost") or row.get("PreTaxCost") or 0)
        if key in merged:
            merged[key]["cost"] += cost
            continue
        merged[key] = {
            "usage_date": usage_date,
            "resource_key": resource_key,
            "resource_group": row.get("ResourceGroup") or None,
            "meter_category": category,
            "cost": cost,
            "currency": row.get("Currency") or "USD",
        }
    return list(merged.values())


# ─── Inventory ────────────────────────────────────────────────────────────────

WORKSPACE_RESOURCE_TYPE = "microsoft.operationalinsights/workspaces"


def extract_resource_group(arm_id: str) -> Optional[str]:
    """'/subscriptions/s/resourceGroups/rg-prod/providers/...' → 'rg-prod'."""
    parts = arm_id.split("/")
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1] or None
    return None


def is_workspace_resource(resource_type: Optional[str]) -> bool:
    return (resource_type or "").lower() == WORKSPACE_RESOURCE_TYPE


def normalize_resource(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """ARM resource list entry → AzureResource fields. None without an id or type."""
    arm_id = raw.get("id")
    resource_type = raw.get("type")
    if not arm_id or not resource_type:
        return None
    return {
        "azure_resource_id": arm_id,
        "name": raw.get("name") or arm_id.rsplit("/", 1)[-1],
        "resource_type": resource_type,
        "resource_group": extract_resource_group(arm_id),
        "location": raw.get("location"),
    }


def normalize_workspace(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Workspace GET response → LogAnalyticsWorkspace fields.

    The query API addresses a workspace by its customerId, which only the
    workspace's own GET returns; without it the workspace is unusable.
    """
    customer_id = (raw.get("properties") or {}).get("customerId")
    if not customer_id:
        return None
    return {
        "workspace_id": customer_id,
        "workspace_name": raw.get("name") or customer_id,
    }
