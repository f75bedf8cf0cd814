"""
Data models for the deployment engine.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import EngineError


class Action(str, Enum):
    """Lifecycle action requested for a service or an environment."""

    CREATE = "create"
    PAUSE = "pause"
    DELETE = "delete"
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    BACKUP = "backup"
    RESTORE = "restore"
    CLONE = "clone"


# Actions the orchestrator knows how to run on every service kind
CORE_ACTIONS = (Action.CREATE, Action.PAUSE, Action.DELETE)


class EnvironmentKind(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"


class ServiceType(str, Enum):
    APPLICATION = "application"
    DATABASE = "database"
    ROUTER = "router"


class DatabaseType(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    REDIS = "redis"


class ProgressLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class ProgressKind(str, Enum):
    LONG_TASK_STARTED = "long_task_started"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ScopeKind(str, Enum):
    ENVIRONMENT = "environment"
    APPLICATION = "application"
    DATABASE = "database"
    ROUTER = "router"
    INFRASTRUCTURE = "infrastructure"


class ProgressScope(BaseModel):
    """What a progress event is about."""

    model_config = ConfigDict(frozen=True)

    kind: ScopeKind
    id: str


class ProgressInfo(BaseModel):
    """A progress notification sent to listeners."""

    scope: ProgressScope
    level: ProgressLevel = ProgressLevel.INFO
    kind: ProgressKind = ProgressKind.IN_PROGRESS
    message: Optional[str] = None
    execution_id: str
    action: Optional[Action] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Sizing(BaseModel):
    """Resources of a service. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    total_cpus: str = Field("500m", description="CPU request (cores or millicores)")
    cpu_burst: str = Field("500m", description="CPU limit")
    total_ram_in_mib: int = Field(512, ge=1)
    min_instances: int = Field(1, ge=0)
    max_instances: int = Field(1, ge=0)

    @field_validator("max_instances")
    @classmethod
    def validate_instances(cls, v, info):
        min_instances = info.data.get("min_instances", 0)
        if v < min_instances:
            raise ValueError(
                f"max_instances ({v}) cannot be lower than min_instances ({min_instances})"
            )
        return v


class Port(BaseModel):
    id: str
    port: int = Field(ge=1, le=65535)
    publicly_accessible: bool = False
    protocol: str = "HTTP"


class EnvironmentVariable(BaseModel):
    key: str
    value: str


class Storage(BaseModel):
    id: str
    name: str
    storage_type: str = "standard"
    size_in_gib: int = 10
    mount_point: str
    snapshot_retention_in_days: int = 0


class Image(BaseModel):
    name: str
    tag: str
    registry_name: Optional[str] = None
    registry_url: Optional[str] = None

    @property
    def full_image_name_with_tag(self) -> str:
        if self.registry_url:
            return f"{self.registry_url}/{self.name}:{self.tag}"
        return f"{self.name}:{self.tag}"


class CustomDomain(BaseModel):
    domain: str
    target_domain: str


class Route(BaseModel):
    path: str = "/"
    application_name: str


class DatabaseOptions(BaseModel):
    login: str
    password: str
    host: str = ""
    port: int = 5432
    disk_size_in_gib: int = 10
    database_disk_type: str = "standard"
    publicly_accessible: bool = False
    activate_high_availability: bool = False
    activate_backups: bool = False


class ProviderSettings(BaseModel):
    """Provider specific constants handed to the otherwise provider-agnostic core."""

    short_name: str = Field(description="Short provider name, e.g. aws, do, scw")
    lib_directory_name: str = Field(description="Provider directory under the lib root")
    extra: Dict[str, Any] = Field(default_factory=dict)


class ChartAction(str, Enum):
    INSTALL = "install"
    DESTROY = "destroy"


class ChartSetValue(BaseModel):
    key: str
    value: str


class ChartValuesGenerated(BaseModel):
    filename: str
    yaml_content: str


class ChartInfo(BaseModel):
    """An installable unit (helm chart release)."""

    name: str
    path: str = ""
    namespace: str = "kube-system"
    action: ChartAction = ChartAction.INSTALL
    timeout_in_seconds: int = 300
    values: List[ChartSetValue] = Field(default_factory=list)
    values_files: List[str] = Field(default_factory=list)
    yaml_files_content: List[ChartValuesGenerated] = Field(default_factory=list)
    last_breaking_version_requiring_restart: Optional[str] = None
    backup_resources: List[str] = Field(default_factory=list)
    selector: Optional[str] = None
    dry_run: bool = False

    def set_value(self, key: str, value: Any):
        self.values.append(ChartSetValue(key=key, value=str(value)))


class Level(BaseModel):
    """Charts that can be installed in any order, after every lower level."""

    index: int
    charts: List[ChartInfo] = Field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [chart.name for chart in self.charts]


class ReleaseStatus(BaseModel):
    """Last deployment status of a helm release."""

    name: str
    namespace: str
    revision: Optional[int] = None
    status: str = "unknown"
    chart: Optional[str] = None
    app_version: Optional[str] = None


class ChartInstallResult(BaseModel):
    """Result of installing or destroying one chart."""

    chart_name: str
    success: bool
    status: Optional[ReleaseStatus] = None
    error: Optional[str] = None
    duration: float = 0.0
    backups: List[str] = Field(default_factory=list)


class TransactionState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    UNRECOVERABLE = "unrecoverable"


class ResultKind(str, Enum):
    OK = "ok"
    ROLLBACK = "rollback"
    UNRECOVERABLE_ERROR = "unrecoverable_error"


class TransactionResult(BaseModel):
    """Terminal outcome of one transaction."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: ResultKind
    cause: Optional[EngineError] = None
    service_id: Optional[str] = None

    @classmethod
    def ok(cls) -> "TransactionResult":
        return cls(kind=ResultKind.OK)

    @classmethod
    def rollback(cls, cause: EngineError, service_id: Optional[str] = None) -> "TransactionResult":
        return cls(kind=ResultKind.ROLLBACK, cause=cause, service_id=service_id)

    @classmethod
    def unrecoverable(cls, service_id: str, cause: EngineError) -> "TransactionResult":
        return cls(kind=ResultKind.UNRECOVERABLE_ERROR, cause=cause, service_id=service_id)

    @property
    def is_ok(self) -> bool:
        return self.kind == ResultKind.OK


# Configuration file models


class ApplicationSpec(BaseModel):
    id: str
    name: str
    action: Action = Action.CREATE
    image: Image
    ports: List[Port] = Field(default_factory=list)
    sizing: Sizing = Field(default_factory=Sizing)
    start_timeout_in_seconds: int = 180
    storage: List[Storage] = Field(default_factory=list)
    environment_variables: List[EnvironmentVariable] = Field(default_factory=list)


class DatabaseSpec(BaseModel):
    id: str
    name: str
    action: Action = Action.CREATE
    database_type: DatabaseType
    version: str
    fqdn: str = ""
    fqdn_id: str = ""
    instance_type: str = ""
    sizing: Sizing = Field(default_factory=Sizing)
    options: DatabaseOptions


class RouterSpec(BaseModel):
    id: str
    name: str
    action: Action = Action.CREATE
    default_domain: str
    custom_domains: List[CustomDomain] = Field(default_factory=list)
    routes: List[Route] = Field(default_factory=list)
    sticky_sessions_enabled: bool = False


class EnvironmentSpec(BaseModel):
    """Declarative description of an environment."""

    id: str
    name: str
    namespace: str
    kind: EnvironmentKind = EnvironmentKind.DEVELOPMENT
    action: Action = Action.CREATE
    applications: List[ApplicationSpec] = Field(default_factory=list)
    databases: List[DatabaseSpec] = Field(default_factory=list)
    routers: List[RouterSpec] = Field(default_factory=list)


class FeatureFlags(BaseModel):
    log_history_enabled: bool = False
    metrics_history_enabled: bool = False
    disable_pleco: bool = False


class ClusterConfig(BaseModel):
    id: str
    name: str
    region: str = ""
    kubeconfig_path: Optional[Path] = None
    provider: ProviderSettings
    credentials_env: Dict[str, str] = Field(default_factory=dict)
    prerequisites_file: Optional[Path] = None
    chart_prefix_path: str = "./lib"
    lib_root_dir: str = "./lib"
    managed_dns_name: str = ""
    managed_dns_resolvers: List[str] = Field(default_factory=list)
    external_dns_provider: str = "cloudflare"
    dns_email_report: str = ""
    acme_url: str = "https://acme-v02.api.letsencrypt.org/directory"
    cloudflare_email: str = ""
    cloudflare_api_token: str = ""
    test_cluster: bool = False
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionConfig(BaseModel):
    """Execution behavior configuration."""

    workspace_root: Path = Field(Path("./.kubewave"), description="Per-run workspace root")
    dry_run: bool = Field(False, description="Render without touching the cluster")
    max_parallel: int = Field(5, ge=1, description="Maximum charts installed at once per level")
    verbose: bool = Field(False, description="Enable verbose output")
    log_level: str = Field("INFO", description="Logging level")
    bootstrap_cluster: bool = Field(True, description="Install cluster charts before deploying")


class EngineConfig(BaseModel):
    """Main engine configuration."""

    cluster: ClusterConfig
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    environments: List[EnvironmentSpec] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def get_environment(self, name: str) -> Optional[EnvironmentSpec]:
        for environment in self.environments:
            if environment.name == name or environment.id == name:
                return environment
        return None
