"""Shared test fixtures."""
import os
from typing import Generator, List
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Never touch a real database file from tests
os.environ.setdefault("AZSYNC_DATABASE_URL", "sqlite://")

# Import all models so SQLModel.metadata knows about them
from azsync.models.azure import (  # noqa: E402,F401
    AzureResource, AzureTenant, CostRecord, LogAnalyticsWorkspace,
    MetricPoint, SqlQueryInsight, SqlRecommendation, SqlWaitStat,
)
from azsync.models.sync import SyncJob, SyncLog  # noqa: E402,F401


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="tenant")
def tenant_fixture(engine) -> AzureTenant:
    """A persisted, enabled tenant with no resources."""
    tenant = AzureTenant(
        name="Contoso",
        directory_id="11111111-1111-1111-1111-111111111111",
        client_id="22222222-2222-2222-2222-222222222222",
        client_secret_ref="contoso",
        subscription_id="sub-123",
    )
    with Session(engine) as s:
        s.add(tenant)
        s.commit()
        s.refresh(tenant)
    return tenant


@pytest.fixture(name="sql_databases")
def sql_databases_fixture(engine, tenant) -> List[AzureResource]:
    """Three SQL databases under the tenant, in id order."""
    resources = []
    with Session(engine) as s:
        for name in ("sql-prod/orders", "sql-prod/billing", "sql-prod/users"):
            resource = AzureResource(
                azure_tenant_id=tenant.id,
                azure_resource_id=(
                    "/subscriptions/sub-123/resourceGroups/rg/providers/"
                    f"Microsoft.Sql/servers/{name.replace('/', '/databases/')}"
                ),
                name=name,
                resource_type="Microsoft.Sql/servers/databases",
            )
            s.add(resource)
            resources.append(resource)
        s.commit()
        for r in resources:
            s.refresh(r)
    return resources


@pytest.fixture(name="workspace")
def workspace_fixture(engine, tenant) -> LogAnalyticsWorkspace:
    workspace = LogAnalyticsWorkspace(
        azure_tenant_id=tenant.id,
        workspace_id="ws-guid-1",
        workspace_name="law-prod",
    )
    with Session(engine) as s:
        s.add(workspace)
        s.commit()
        s.refresh(workspace)
    return workspace


@pytest.fixture(name="credentials")
def credentials_fixture():
    """Credential provider double that hands out a fixed token."""
    credentials = AsyncMock()
    credentials.get_token = AsyncMock(return_value="token-abc")
    return credentials
