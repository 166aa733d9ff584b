"""Azure inventory and synced-data models.

Tenants are registered by an operator. Workspaces and resources are written
by the inventory sync (azsync.sync.inventory) from the ARM resource list.
Every synced row carries a unique constraint on (owner, stable record key)
so re-running a sync updates rows in place.
"""
from datetime import date, datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class AzureTenant(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    directory_id: str  # Azure AD tenant GUID
    client_id: str
    client_secret_ref: str  # key into the secret store, never the secret itself
    subscription_id: str
    is_enabled: bool = True


class LogAnalyticsWorkspace(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("azure_tenant_id", "workspace_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    azure_tenant_id: int = Field(foreign_key="azuretenant.id", index=True)
    workspace_id: str  # Log Analytics customer id (GUID)
    workspace_name: str


class AzureResource(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("azure_tenant_id", "azure_resource_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    azure_tenant_id: int = Field(foreign_key="azuretenant.id", index=True)
    azure_resource_id: str = Field(index=True)  # full ARM id
    name: str
    resource_type: str  # e.g. "Microsoft.Sql/servers/databases"
    resource_group: Optional[str] = None
    location: Optional[str] = None
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class MetricPoint(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("resource_id", "metric_name", "timestamp_utc"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    resource_id: int = Field(foreign_key="azureresource.id", index=True)
    metric_name: str
    metric_namespace: Optional[str] = None
    timestamp_utc: datetime
    average: Optional[float] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    total: Optional[float] = None
    count: Optional[float] = None
    unit: Optional[str] = None


class SqlWaitStat(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("resource_id", "wait_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    resource_id: int = Field(foreign_key="azureresource.id", index=True)
    wait_type: str
    wait_time_ms: float = 0.0
    wait_count: int = 0
    avg_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class SqlQueryInsight(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("resource_id", "query_hash"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    resource_id: int = Field(foreign_key="azureresource.id", index=True)
    query_hash: str
    query_text: Optional[str] = None
    execution_count: int = 0
    total_cpu_time_ms: float = 0.0
    avg_cpu_time_ms: float = 0.0
    total_duration_ms: float = 0.0
    avg_duration_ms: float = 0.0
    total_logical_reads: float = 0.0
    avg_logical_reads: float = 0.0
    total_logical_writes: float = 0.0
    avg_logical_writes: float = 0.0
    last_execution_time: Optional[datetime] = None
    synced_at: datetime = Field(default_factory=datetime.utcnow)


class SqlRecommendation(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("resource_id", "recommendation_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    resource_id: int = Field(foreign_key="azureresource.id", index=True)
    recommendation_id: str
    name: str
    category: Optional[str] = None
    impact: Optional[str] = None
    problem: Optional[str] = None
    solution: Optional[str] = None
    is_resolved: bool = False
    last_seen_at: datetime = Field(default_factory=datetime.utcnow)


class CostRecord(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("tenant_id", "usage_date", "resource_key", "meter_category"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: int = Field(foreign_key="azuretenant.id", index=True)
    usage_date: date
    resource_key: str  # lower-cased ARM id, or "" for unattributed cost
    resource_group: Optional[str] = None
    meter_category: str = ""
    cost: float = 0.0
    currency: Optional[str] = None
    synced_at: datetime = Field(default_factory=datetime.utcnow)
