"""
Cluster handle and deployment target.
"""

import asyncio
import logging
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional

from .charts import ChartsConfigPrerequisites, LevelInstaller, build_cluster_charts
from .commands import Helm, Kubectl
from .errors import PrerequisiteError
from .events import ProgressBus, ProgressNotifier
from .models import (
    ChartInstallResult,
    ClusterConfig,
    EnvironmentKind,
    ExecutionConfig,
    Level,
    ProgressLevel,
    ProgressScope,
    ScopeKind,
)
from .probe import ReadinessProber
from .templates import TemplateRenderer
from .versions import StaticVersionLookup, SupportedVersionLookup

if TYPE_CHECKING:
    from .services import Environment


class Cluster:
    """Everything services need to act on one Kubernetes cluster."""

    def __init__(
        self,
        config: ClusterConfig,
        execution: Optional[ExecutionConfig] = None,
        bus: Optional[ProgressBus] = None,
        helm: Optional[Helm] = None,
        kubectl: Optional[Kubectl] = None,
        renderer: Optional[TemplateRenderer] = None,
        prober: Optional[ReadinessProber] = None,
        version_lookup: Optional[SupportedVersionLookup] = None,
        chart_builder: Optional[Callable[["Cluster"], List[Level]]] = None,
        logger=None,
    ):
        self.config = config
        self.execution = execution or ExecutionConfig()
        self.bus = bus or ProgressBus()
        self.helm = helm or Helm(config.kubeconfig_path, config.credentials_env)
        self.kubectl = kubectl or Kubectl(config.kubeconfig_path, config.credentials_env)
        self.renderer = renderer or TemplateRenderer()
        self.prober = prober or ReadinessProber(self.bus)
        self.version_lookup = version_lookup or StaticVersionLookup()
        self.chart_builder = chart_builder or default_chart_builder
        self.logger = logger or logging.getLogger(__name__)

        self._infrastructure_ready = False
        self._infrastructure_lock: Optional[asyncio.Lock] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    @property
    def infrastructure_ready(self) -> bool:
        return self._infrastructure_ready

    def workspace_directory(self, execution_id: str, *parts: str) -> Path:
        """Per-run directory, isolated by execution id."""
        return Path(self.execution.workspace_root, execution_id, *parts)

    def lib_directory(self, *parts: str) -> Path:
        return Path(self.config.lib_root_dir, *parts)

    def charts_prerequisites(self) -> ChartsConfigPrerequisites:
        config = self.config
        resolvers = config.managed_dns_resolvers
        return ChartsConfigPrerequisites(
            organization_id=str(config.metadata.get("organization_id", "")),
            cluster_id=config.id,
            cluster_name=config.name,
            region=config.region,
            cloud_provider=config.provider.short_name,
            test_cluster=config.test_cluster,
            provider_token=str(config.provider.extra.get("token", "")),
            ff_log_history_enabled=config.features.log_history_enabled,
            ff_metrics_history_enabled=config.features.metrics_history_enabled,
            disable_pleco=config.features.disable_pleco,
            managed_dns_name=config.managed_dns_name,
            managed_dns_helm_format="{" + config.managed_dns_name + "}",
            managed_dns_resolvers_terraform_format="{" + ",".join(resolvers) + "}",
            external_dns_provider=config.external_dns_provider,
            dns_email_report=config.dns_email_report,
            acme_url=config.acme_url,
            cloudflare_email=config.cloudflare_email,
            cloudflare_api_token=config.cloudflare_api_token,
            engine_version=str(config.metadata.get("engine_version", "latest")),
            agent_version=str(config.metadata.get("agent_version", "latest")),
            shell_agent_version=str(config.metadata.get("shell_agent_version", "latest")),
        )

    def build_levels(self) -> List[Level]:
        levels = self.chart_builder(self)
        for level in levels:
            for chart in level.charts:
                chart.dry_run = self.dry_run
        return levels

    async def ensure_infrastructure(self, execution_id: str) -> List[ChartInstallResult]:
        """Install the cluster charts once for this handle.

        Later calls return immediately, whatever the environment asking.
        """
        if self._infrastructure_lock is None:
            # bound to the running loop on first use
            self._infrastructure_lock = asyncio.Lock()
        async with self._infrastructure_lock:
            if self._infrastructure_ready:
                self.logger.debug(f"Cluster {self.name} infrastructure already installed")
                return []

            notifier = ProgressNotifier(
                self.bus, ProgressScope(kind=ScopeKind.INFRASTRUCTURE, id=self.id), execution_id
            )
            notifier.info(f"Preparing infrastructure of cluster {self.name}")

            levels = self.build_levels()

            def on_result(result: ChartInstallResult):
                if result.success:
                    notifier.info(f"Chart {result.chart_name} deployed")
                else:
                    notifier.send(f"Chart {result.chart_name} failed", ProgressLevel.ERROR)

            installer = LevelInstaller(
                self.helm,
                self.kubectl,
                self.workspace_directory(execution_id, "infrastructure"),
                max_parallel=self.execution.max_parallel,
                on_result=on_result,
                logger=self.logger,
            )
            results = await installer.install_levels(levels)

            self._infrastructure_ready = True
            notifier.info(f"Infrastructure of cluster {self.name} is ready")
            return results


def default_chart_builder(cluster: Cluster) -> List[Level]:
    if cluster.config.prerequisites_file is None:
        message_safe = (
            "Can't deploy helm chart as the provisioning config file has not been "
            "rendered. Are you running it in dry run mode?"
        )
        raise PrerequisiteError(message_safe, "cluster.prerequisites_file is not set")

    return build_cluster_charts(
        cluster.config.prerequisites_file,
        cluster.charts_prerequisites(),
        cluster.config.chart_prefix_path,
    )


class DeploymentTargetKind(str, Enum):
    MANAGED_SERVICES = "managed_services"
    SELF_HOSTED = "self_hosted"


class DeploymentTarget:
    """A cluster handle plus the environment being deployed on it."""

    def __init__(self, cluster: Cluster, environment: "Environment"):
        self.cluster = cluster
        self.environment = environment
        if environment.kind == EnvironmentKind.PRODUCTION:
            self.kind = DeploymentTargetKind.MANAGED_SERVICES
        else:
            self.kind = DeploymentTargetKind.SELF_HOSTED

    @property
    def is_managed(self) -> bool:
        return self.kind == DeploymentTargetKind.MANAGED_SERVICES

    @property
    def bus(self) -> ProgressBus:
        return self.cluster.bus

    @property
    def execution_id(self) -> str:
        return self.environment.execution_id

    @property
    def namespace(self) -> str:
        return self.environment.namespace

    def notifier(self, scope: ProgressScope) -> ProgressNotifier:
        return ProgressNotifier(self.bus, scope, self.execution_id)
