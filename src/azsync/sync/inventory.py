"""
Resource inventory sync.

Metrics, SQL insights and their chunked runs enumerate over a tenant's
AzureResource and LogAnalyticsWorkspace rows. sync_inventory fills those
rows from the subscription's ARM resource list:

  1. Acquire a management token and list every resource (all pages).
     A failure here fails the whole sync.
  2. Upsert each resource by (tenant, ARM id).
  3. Look up each Log Analytics workspace for its customer id and upsert it.
     A workspace that cannot be looked up is logged and skipped.

Resources that disappear from Azure are not deleted.
"""
import logging
from dataclasses import dataclass, field
from typing import List

from azsync.azure.auth import MANAGEMENT_SCOPE
from azsync.azure.normalizer import is_workspace_resource, normalize_resource, normalize_workspace
from azsync.models.azure import AzureResource, AzureTenant, LogAnalyticsWorkspace
from azsync.sync.storage import upsert_rows

logger = logging.getLogger(__name__)


@dataclass
class InventoryResult:
    resources: int = 0
    workspaces: int = 0
    failed_workspaces: List[str] = field(default_factory=list)


async def sync_inventory(engine, credentials, client, tenant: AzureTenant) -> InventoryResult:
    """
    Upsert every resource in the tenant's subscription, then its workspaces.

    Args:
        engine: SQLAlchemy engine.
        credentials: AzureCredentialProvider (or AsyncMock in tests).
        client: AzureClient (or AsyncMock in tests).
        tenant: The tenant whose subscription is listed.

    Raises:
        Whatever token acquisition or the resource listing raises.
    """
    token = await credentials.get_token(tenant.id, MANAGEMENT_SCOPE)
    raw_resources = await client.list_resources(token, tenant.subscription_id)

    result = InventoryResult()
    rows = [r for r in (normalize_resource(raw) for raw in raw_resources) if r]
    result.resources = upsert_rows(
        engine, AzureResource, ("azure_tenant_id", "azure_resource_id"),
        rows, azure_tenant_id=tenant.id,
    )

    workspaces = []
    for raw in raw_resources:
        if not is_workspace_resource(raw.get("type")):
            continue
        name = raw.get("name") or raw.get("id")
        try:
            detail = await client.get_workspace(token, raw["id"])
        except Exception as exc:
            logger.warning("Workspace lookup for %s failed: %s", name, exc)
            result.failed_workspaces.append(name)
            continue
        workspace = normalize_workspace(detail)
        if workspace is None:
            logger.warning("Workspace %s has no customer id, skipping", name)
            result.failed_workspaces.append(name)
            continue
        workspaces.append(workspace)

    result.workspaces = upsert_rows(
        engine, LogAnalyticsWorkspace, ("azure_tenant_id", "workspace_id"),
        workspaces, azure_tenant_id=tenant.id,
    )
    logger.info(
        "Inventory for tenant %s: %d resources, %d workspaces",
        tenant.id, result.resources, result.workspaces,
    )
    return result
