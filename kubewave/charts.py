"""
Cluster infrastructure charts and their installation levels.

Charts are grouped into levels: charts of one level may install in any order
(and concurrently), but only once every chart of the previous levels is
installed. A chart reading state produced by another one always sits in a
later level than its producer.
"""

import asyncio
import base64
import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from .backup import apply_chart_backup, prepare_chart_backup
from .commands import Helm, Kubectl, version_tuple
from .errors import ChartInstallError, EngineError, PrerequisiteError
from .models import (
    ChartAction,
    ChartInfo,
    ChartInstallResult,
    ChartSetValue,
    ChartValuesGenerated,
    Level,
)

logger = logging.getLogger(__name__)


class HelmChartNamespaces:
    KUBE_SYSTEM = "kube-system"
    PROMETHEUS = "prometheus"
    LOGGING = "logging"
    CERT_MANAGER = "cert-manager"
    NGINX_INGRESS = "nginx-ingress"
    QOVERY = "qovery"


class ClusterProvisioningOutputs(BaseModel):
    """Values written by the infrastructure provisioning step."""

    model_config = ConfigDict(extra="allow")

    loki_storage_config_access_id: str
    loki_storage_config_secret_key: str
    loki_storage_config_region: str
    loki_storage_config_host: str
    loki_storage_config_bucket_name: str


class ChartsConfigPrerequisites(BaseModel):
    """Everything the cluster charts are configured from."""

    organization_id: str
    cluster_id: str
    cluster_name: str
    region: str
    cloud_provider: str
    test_cluster: bool = False
    provider_token: str = ""
    ff_log_history_enabled: bool = False
    ff_metrics_history_enabled: bool = False
    disable_pleco: bool = False
    managed_dns_name: str = ""
    managed_dns_helm_format: str = ""
    managed_dns_resolvers_terraform_format: str = ""
    external_dns_provider: str = "cloudflare"
    dns_email_report: str = ""
    acme_url: str = "https://acme-v02.api.letsencrypt.org/directory"
    cloudflare_email: str = ""
    cloudflare_api_token: str = ""
    engine_version: str = "latest"
    agent_version: str = "latest"
    shell_agent_version: str = "latest"


def load_provisioning_outputs(path: Union[str, Path]) -> ClusterProvisioningOutputs:
    """Parse the provisioning outputs file or raise ``PrerequisiteError``."""
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except OSError as e:
        message_safe = (
            "Can't deploy helm chart as the provisioning config file has not been "
            "rendered. Are you running it in dry run mode?"
        )
        raise PrerequisiteError(message_safe, f"{message_safe}, error: {e}")
    except json.JSONDecodeError as e:
        message_safe = f"Error while parsing provisioning config file {path}"
        raise PrerequisiteError(message_safe, f"{message_safe}, error: {e}")

    try:
        return ClusterProvisioningOutputs(**raw)
    except (ValidationError, TypeError) as e:
        message_safe = f"Error while parsing provisioning config file {path}"
        raise PrerequisiteError(message_safe, f"{message_safe}, error: {e}")


def _values(**values) -> List[ChartSetValue]:
    return [ChartSetValue(key=key.replace("__", "."), value=str(value)) for key, value in values.items()]


def _resources(cpu_request: str, cpu_limit: str, memory_request: str, memory_limit: str) -> List[ChartSetValue]:
    return [
        ChartSetValue(key="resources.limits.cpu", value=cpu_limit),
        ChartSetValue(key="resources.requests.cpu", value=cpu_request),
        ChartSetValue(key="resources.limits.memory", value=memory_limit),
        ChartSetValue(key="resources.requests.memory", value=memory_request),
    ]


def build_cluster_charts(
    prerequisites_file: Union[str, Path],
    prerequisites: ChartsConfigPrerequisites,
    chart_prefix_path: Optional[str] = None,
) -> List[Level]:
    """Build the ordered installation levels for a cluster.

    The provisioning outputs file is parsed first: when it is missing or
    invalid nothing is built and ``PrerequisiteError`` is raised.
    """
    outputs = load_provisioning_outputs(prerequisites_file)

    chart_prefix = (chart_prefix_path or ".").rstrip("/")

    def chart_path(path: str) -> str:
        return f"{chart_prefix}/{path.lstrip('/')}"

    prometheus_namespace = HelmChartNamespaces.PROMETHEUS
    prometheus_internal_url = f"http://prometheus-operated.{prometheus_namespace}.svc"
    loki_namespace = HelmChartNamespaces.LOGGING
    loki_kube_dns_prefix = f"loki.{loki_namespace}.svc"

    storage_class = ChartInfo(name="q-storageclass", path=chart_path("charts/q-storageclass"))

    coredns_config = ChartInfo(
        name="coredns",
        path=chart_path("charts/coredns-config"),
        values=_values(
            managed_dns=prerequisites.managed_dns_helm_format,
            managed_dns_resolvers=prerequisites.managed_dns_resolvers_terraform_format,
        ),
    )

    registry_token = base64.b64encode(
        f"{prerequisites.provider_token}:{prerequisites.provider_token}".encode()
    ).decode()
    container_registry_secret = ChartInfo(
        name="container-registry-secret",
        path=chart_path("charts/container-registry-secret"),
        namespace=HelmChartNamespaces.KUBE_SYSTEM,
        values_files=[chart_path("chart_values/container-registry-secret.yaml")],
        values=_values(
            registry_secret_token=registry_token,
            registry_secret_name="container-registry-secret-for-cluster",
            registry_secret_namespace=HelmChartNamespaces.KUBE_SYSTEM,
        ),
    )

    cert_manager = ChartInfo(
        name="cert-manager",
        path=chart_path("common/charts/cert-manager"),
        namespace=HelmChartNamespaces.CERT_MANAGER,
        last_breaking_version_requiring_restart="1.4.4",
        backup_resources=["cert", "issuer", "clusterissuer"],
        values=_values(
            installCRDs="true",
            replicaCount="1",
            prometheus__servicemonitor__enabled=str(prerequisites.ff_metrics_history_enabled).lower(),
            prometheus__servicemonitor__prometheusInstance="qovery",
            **{"extraArgs[0]": "--dns01-recursive-nameservers-only"},
        ) + _resources("50m", "200m", "1Gi", "1Gi"),
    )

    kube_prometheus_stack = ChartInfo(
        name="kube-prometheus-stack",
        path=chart_path("common/charts/kube-prometheus-stack"),
        namespace=prometheus_namespace,
        timeout_in_seconds=480,
        values_files=[chart_path("chart_values/kube-prometheus-stack.yaml")],
        values=_values(
            nameOverride="prometheus-operator",
            fullnameOverride="prometheus-operator",
            prometheus__prometheusSpec__externalUrl=prometheus_internal_url,
        ),
    )

    promtail = ChartInfo(
        name="promtail",
        path=chart_path("common/charts/promtail"),
        namespace=HelmChartNamespaces.KUBE_SYSTEM,
        last_breaking_version_requiring_restart="0.24.0",
        values=_values(
            **{"config.clients[0].url": f"http://{loki_kube_dns_prefix}.cluster.local:3100/loki/api/v1/push"},
            priorityClassName="system-node-critical",
        ) + _resources("100m", "100m", "128Mi", "128Mi"),
    )

    loki = ChartInfo(
        name="loki",
        path=chart_path("common/charts/loki"),
        namespace=loki_namespace,
        values_files=[chart_path("chart_values/loki.yaml")],
        values=_values(
            config__storage_config__aws__s3=outputs.loki_storage_config_host,
            config__storage_config__aws__bucketnames=outputs.loki_storage_config_bucket_name,
            config__storage_config__aws__region=outputs.loki_storage_config_region,
            config__storage_config__aws__access_key_id=outputs.loki_storage_config_access_id,
            config__storage_config__aws__secret_access_key=outputs.loki_storage_config_secret_key,
        ) + _resources("100m", "1", "2Gi", "2Gi"),
    )

    metrics_server = ChartInfo(
        name="metrics-server",
        path=chart_path("common/charts/metrics-server"),
        values_files=[chart_path("chart_values/metrics-server.yaml")],
        values=_resources("250m", "250m", "256Mi", "256Mi"),
    )

    external_dns = ChartInfo(
        name="externaldns",
        path=chart_path("common/charts/external-dns"),
        values_files=[chart_path("chart_values/external-dns.yaml")],
        values=_values(
            provider=prerequisites.external_dns_provider,
            cloudflare__apiToken=prerequisites.cloudflare_api_token,
            cloudflare__email=prerequisites.cloudflare_email,
            cloudflare__proxied="false",
            **{"domainFilters[0]": prerequisites.managed_dns_name},
            txtOwnerId=prerequisites.cluster_id,
        ) + _resources("50m", "50m", "50Mi", "50Mi"),
    )

    prometheus_adapter = ChartInfo(
        name="prometheus-adapter",
        path=chart_path("common/charts/prometheus-adapter"),
        namespace=prometheus_namespace,
        values=_values(
            metricsRelistInterval="30s",
            prometheus__url=prometheus_internal_url,
            podDisruptionBudget__enabled="true",
            podDisruptionBudget__maxUnavailable="1",
        ) + _resources("100m", "100m", "128Mi", "128Mi"),
    )

    kube_state_metrics = ChartInfo(
        name="kube-state-metrics",
        path=chart_path("common/charts/kube-state-metrics"),
        namespace=prometheus_namespace,
        values=_values(prometheus__monitor__enabled="true")
        + _resources("75m", "75m", "384Mi", "384Mi"),
    )

    nginx_ingress = ChartInfo(
        name="nginx-ingress",
        path=chart_path("common/charts/ingress-nginx"),
        namespace=HelmChartNamespaces.NGINX_INGRESS,
        timeout_in_seconds=800,
        values_files=[chart_path("chart_values/nginx-ingress.yaml")],
        values=_values(
            controller__autoscaling__enabled="true",
            controller__autoscaling__minReplicas="2",
            controller__autoscaling__maxReplicas="25",
            controller__metrics__enabled=str(prerequisites.ff_metrics_history_enabled).lower(),
        ) + _resources("200m", "700m", "768Mi", "768Mi"),
    )

    pleco = ChartInfo(
        name="pleco",
        path=chart_path("common/charts/pleco"),
        values_files=[chart_path(f"chart_values/pleco-{prerequisites.cloud_provider}.yaml")],
        values=_values(
            environmentVariables__LOG_LEVEL="debug",
            environmentVariables__PROVIDER_TOKEN=prerequisites.provider_token,
            enabledFeatures__disableDryRun="true",
            enabledFeatures__region=prerequisites.region,
        ),
    )

    cert_manager_config = ChartInfo(
        name="cert-manager-configs",
        path=chart_path("common/charts/cert-manager-configs"),
        namespace=HelmChartNamespaces.CERT_MANAGER,
        values=_values(
            externalDnsProvider=prerequisites.external_dns_provider,
            acme__letsEncrypt__emailReport=prerequisites.dns_email_report,
            acme__letsEncrypt__acmeUrl=prerequisites.acme_url,
            managedDns=prerequisites.managed_dns_helm_format,
            provider__cloudflare__apiToken=prerequisites.cloudflare_api_token,
            provider__cloudflare__email=prerequisites.cloudflare_email,
        ),
    )

    agent_environment = _values(
        environmentVariables__CLUSTER_ID=prerequisites.cluster_id,
        environmentVariables__ORGANIZATION_ID=prerequisites.organization_id,
        environmentVariables__LOKI_URL=f"http://{loki_kube_dns_prefix}.cluster.local:3100",
    )

    cluster_agent = ChartInfo(
        name="qovery-agent",
        path=chart_path("common/charts/qovery-agent"),
        namespace=HelmChartNamespaces.QOVERY,
        values=_values(image__tag=prerequisites.agent_version)
        + agent_environment
        + _resources("200m", "1", "500Mi", "500Mi"),
    )
    if prerequisites.ff_log_history_enabled:
        cluster_agent.set_value("environmentVariables.FEATURES", "LogsHistory")

    shell_agent = ChartInfo(
        name="qovery-shell-agent",
        path=chart_path("common/charts/qovery-shell-agent"),
        namespace=HelmChartNamespaces.QOVERY,
        values=_values(image__tag=prerequisites.shell_agent_version)
        + agent_environment
        + _resources("100m", "1", "50Mi", "500Mi"),
    )

    deployment_engine = ChartInfo(
        name="qovery-engine",
        path=chart_path("common/charts/qovery-engine"),
        namespace=HelmChartNamespaces.QOVERY,
        timeout_in_seconds=900,
        values=_values(
            image__tag=prerequisites.engine_version,
            autoscaler__min_replicas="1",
            metrics__enabled=str(prerequisites.ff_metrics_history_enabled).lower(),
            environmentVariables__ORGANIZATION=prerequisites.organization_id,
            environmentVariables__CLOUD_PROVIDER=prerequisites.cloud_provider,
            environmentVariables__REGION=prerequisites.region,
            environmentVariables__LIB_ROOT_DIR="/home/qovery/lib",
            environmentVariables__DOCKER_HOST="tcp://0.0.0.0:2375",
        ) + _resources("1", "1", "2Gi", "2Gi"),
    )

    node_lifecycle_daemon = ChartInfo(
        name="digital-mobius",
        path=chart_path("charts/digital-mobius"),
        values=_values(
            environmentVariables__LOG_LEVEL="debug",
            environmentVariables__DELAY_NODE_CREATION="5m",
            environmentVariables__CLUSTER_ID=prerequisites.cluster_id,
            enabledFeatures__disableDryRun="true",
        ),
    )

    token_rotate = ChartInfo(
        name="k8s-token-rotate",
        path=chart_path("charts/k8s-token-rotate"),
        values=_values(
            environmentVariables__PROVIDER_TOKEN=prerequisites.provider_token,
            environmentVariables__CLUSTER_ID=prerequisites.cluster_id,
        ),
    )

    datasources = {
        "datasources": {
            "datasources.yaml": {
                "apiVersion": 1,
                "datasources": [
                    {"name": "Prometheus", "type": "prometheus", "url": f"{prometheus_internal_url}:9090", "access": "proxy", "isDefault": True},
                    {"name": "PromLoki", "type": "prometheus", "url": f"http://{loki_kube_dns_prefix}:3100/loki", "access": "proxy"},
                    {"name": "Loki", "type": "loki", "url": f"http://{loki_kube_dns_prefix}:3100", "access": "proxy"},
                ],
            }
        }
    }
    grafana = ChartInfo(
        name="grafana",
        path=chart_path("common/charts/grafana"),
        namespace=prometheus_namespace,
        values_files=[chart_path("chart_values/grafana.yaml")],
        yaml_files_content=[
            ChartValuesGenerated(
                filename="grafana_generated.yaml",
                yaml_content=yaml.safe_dump(datasources, default_flow_style=False),
            )
        ],
    )

    # chart deployment order matters
    level_1 = [storage_class, coredns_config]
    level_2 = [container_registry_secret, cert_manager]
    level_3: List[ChartInfo] = []
    level_4 = [metrics_server, external_dns]
    level_5 = [nginx_ingress]
    level_6 = [
        cert_manager_config,
        cluster_agent,
        shell_agent,
        deployment_engine,
        node_lifecycle_daemon,
        token_rotate,
    ]

    # observability
    if prerequisites.ff_metrics_history_enabled:
        level_2.append(kube_prometheus_stack)
        level_4.append(prometheus_adapter)
        level_4.append(kube_state_metrics)
    if prerequisites.ff_log_history_enabled:
        level_3.append(promtail)
        level_4.append(loki)

    if prerequisites.ff_metrics_history_enabled or prerequisites.ff_log_history_enabled:
        level_6.append(grafana)

    if not prerequisites.disable_pleco:
        level_5.append(pleco)

    levels = [
        Level(index=index, charts=charts)
        for index, charts in enumerate([level_1, level_2, level_3, level_4, level_5, level_6], 1)
    ]
    check_unique_names(levels)

    logger.info("Charts configuration preparation finished")
    return levels


def check_unique_names(levels: List[Level]):
    seen = set()
    for level in levels:
        for name in level.names:
            if name in seen:
                raise EngineError(
                    f"Chart {name} is scheduled more than once",
                    f"level={level.index}",
                )
            seen.add(name)


class LevelInstaller:
    """Installs levels in order, charts of a level concurrently."""

    def __init__(
        self,
        helm: Helm,
        kubectl: Kubectl,
        workspace_dir: Path,
        max_parallel: int = 5,
        on_result: Optional[Callable[[ChartInstallResult], None]] = None,
        logger=None,
    ):
        self.helm = helm
        self.kubectl = kubectl
        self.workspace_dir = Path(workspace_dir)
        self.max_parallel = max_parallel
        self.on_result = on_result
        self.logger = logger or logging.getLogger(__name__)

    async def install_levels(self, levels: List[Level]) -> List[ChartInstallResult]:
        """Install every level. The first failing level stops the run."""
        check_unique_names(levels)
        all_results: List[ChartInstallResult] = []

        for level in levels:
            if not level.charts:
                self.logger.debug(f"Level {level.index} is empty, skipping")
                continue

            self.logger.info(f"Installing level {level.index}: {', '.join(level.names)}")
            results = await self.install_level(level)
            all_results.extend(results)

            failed = [r for r in results if not r.success]
            if failed:
                raise ChartInstallError(
                    level.index,
                    [r.chart_name for r in failed],
                    "; ".join(f"{r.chart_name}: {r.error}" for r in failed),
                )

        return all_results

    async def install_level(self, level: Level) -> List[ChartInstallResult]:
        results = []

        for chunk in self._chunk_list(level.charts, self.max_parallel):
            chunk_results = await asyncio.gather(
                *(self.install_chart(chart) for chart in chunk), return_exceptions=True
            )

            for chart, result in zip(chunk, chunk_results):
                if isinstance(result, Exception):
                    result = ChartInstallResult(chart_name=chart.name, success=False, error=str(result))
                results.append(result)
                if self.on_result:
                    self.on_result(result)

        return results

    async def install_chart(self, chart: ChartInfo) -> ChartInstallResult:
        start_time = time.time()

        try:
            if chart.action == ChartAction.DESTROY:
                await self.helm.uninstall(chart.name, chart.namespace)
                return ChartInstallResult(
                    chart_name=chart.name, success=True, duration=time.time() - start_time
                )

            values_files = self._write_generated_values(chart)
            backups: List[str] = []

            if await self._crosses_breaking_version(chart):
                self.logger.warning(
                    f"Chart {chart.name} crosses breaking version "
                    f"{chart.last_breaking_version_requiring_restart}, reinstalling it"
                )
                if chart.backup_resources:
                    infos = await prepare_chart_backup(
                        self.kubectl, self._chart_dir(chart), chart, chart.backup_resources
                    )
                    backups = [info.secret_name for info in infos]
                await self.helm.uninstall(chart.name, chart.namespace)
                status = await self.helm.upgrade(chart, values_files)
                if chart.backup_resources:
                    await apply_chart_backup(self.kubectl, self._chart_dir(chart), chart)
            else:
                status = await self.helm.upgrade(chart, values_files)

            return ChartInstallResult(
                chart_name=chart.name,
                success=True,
                status=status,
                duration=time.time() - start_time,
                backups=backups,
            )

        except EngineError as e:
            self.logger.error(f"Chart {chart.name} failed: {e.full_details()}")
            return ChartInstallResult(
                chart_name=chart.name,
                success=False,
                error=e.full_details(),
                duration=time.time() - start_time,
            )

    async def _crosses_breaking_version(self, chart: ChartInfo) -> bool:
        if not chart.last_breaking_version_requiring_restart:
            return False
        deployed = await self.helm.deployed_chart_version(chart.name, chart.namespace)
        if deployed is None:
            return False
        return version_tuple(deployed) < version_tuple(chart.last_breaking_version_requiring_restart)

    def _chart_dir(self, chart: ChartInfo) -> Path:
        return self.workspace_dir / "charts" / chart.name

    def _write_generated_values(self, chart: ChartInfo) -> List[str]:
        paths = []
        for generated in chart.yaml_files_content:
            path = self._chart_dir(chart) / generated.filename
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(generated.yaml_content)
            except OSError as e:
                raise EngineError(
                    f"Cannot write generated values for chart {chart.name}", str(e)
                )
            paths.append(str(path))
        return paths

    def _chunk_list(self, lst: List, chunk_size: int):
        """Split list into chunks."""
        for i in range(0, len(lst), chunk_size):
            yield lst[i : i + chunk_size]


def plan_summary(levels: List[Level]) -> Dict[int, List[str]]:
    return {level.index: level.names for level in levels}
