"""
Deployable services and the environment grouping them.

The set of service kinds is closed: ``Application``, ``Database`` and
``Router`` implement the ``Service`` contract. For each core action
(create, pause, delete) a service exposes three hooks: ``on_<action>_check``
runs before anything is mutated, ``on_<action>`` does the work and
``on_<action>_error`` cleans up when the batch fails. Other actions are
capability-gated.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .cluster import DeploymentTarget
from .errors import (
    CapabilityNotSupportedError,
    CommandError,
    EngineError,
    ExecutionError,
    ServiceValidationError,
)
from .events import ProgressBus
from .models import (
    CORE_ACTIONS,
    Action,
    ChartInfo,
    CustomDomain,
    DatabaseOptions,
    DatabaseType,
    EnvironmentKind,
    EnvironmentVariable,
    Image,
    Port,
    ProgressInfo,
    ProgressKind,
    ProgressLevel,
    ProgressScope,
    ProviderSettings,
    Route,
    ScopeKind,
    ServiceType,
    Sizing,
    Storage,
)

logger = logging.getLogger(__name__)

DEFAULT_START_TIMEOUT = 600
LONG_TASK_HEARTBEAT_INTERVAL = 30
HELM_RELEASE_NAME_MAX_LENGTH = 50


def sanitize_name(prefix: str, name: str) -> str:
    return f"{prefix}-{name}".replace("_", "-").lower()


def cpu_string_to_float(cpu: str) -> float:
    """``"500m"`` is 0.5 cores, ``"2"`` is 2 cores."""
    value = cpu.strip()
    if value.endswith("m"):
        return float(value[:-1]) / 1000
    return float(value)


class Service(ABC):
    """Base class for every deployable service."""

    service_type: ServiceType
    scope_kind: ScopeKind
    selector_key: str
    name_prefix: str
    release_prefix: str
    supported_actions: Tuple[Action, ...] = CORE_ACTIONS
    create_timeout_multiplier = 1

    def __init__(
        self,
        id: str,
        name: str,
        action: Action,
        sizing: Sizing,
        provider: ProviderSettings,
        start_timeout_base: int = DEFAULT_START_TIMEOUT,
        logger=None,
    ):
        self._id = id
        self.name = name
        self.action = action
        self.sizing = sizing
        self.provider = provider
        self.start_timeout_base = start_timeout_base
        self.listeners = ProgressBus()
        self.logger = logger or logging.getLogger(__name__)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, name={self.name!r})"

    @property
    def id(self) -> str:
        return self._id

    @property
    def stateful(self) -> bool:
        return False

    @property
    def private_port(self) -> Optional[int]:
        return None

    @property
    def sanitized_name(self) -> str:
        return sanitize_name(self.name_prefix, self.name)

    @property
    def helm_release_name(self) -> str:
        return f"{self.release_prefix}-{self.id}"[:HELM_RELEASE_NAME_MAX_LENGTH]

    @property
    def selector(self) -> str:
        return f"{self.selector_key}={self.id}"

    @property
    def progress_scope(self) -> ProgressScope:
        return ProgressScope(kind=self.scope_kind, id=self.id)

    def add_listener(self, listener: Callable[[ProgressInfo], Any]):
        self.listeners.subscribe(listener)

    def workspace_directory(self, target: DeploymentTarget):
        return target.cluster.workspace_directory(
            target.execution_id, f"{self.service_type.value}s", self.id
        )

    def start_timeout(self) -> int:
        """Seconds to wait for the service to be ready after its hook."""
        if self.action == Action.CREATE:
            return self.start_timeout_base * self.create_timeout_multiplier
        return self.start_timeout_base

    def progress(
        self,
        target: DeploymentTarget,
        message: Optional[str],
        level: ProgressLevel = ProgressLevel.INFO,
        kind: ProgressKind = ProgressKind.IN_PROGRESS,
        action: Optional[Action] = None,
    ):
        info = ProgressInfo(
            scope=self.progress_scope,
            level=level,
            kind=kind,
            message=message,
            execution_id=target.execution_id,
            action=action or self.action,
        )
        target.bus.publish(info)
        self.listeners.publish(info)

    def print_action(self, hook_name: str):
        message = f"{self.provider.short_name}.{self.service_type.value}.{hook_name} called for {self.name}"
        if hook_name.endswith("_error"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    # capabilities

    def supports(self, action: Action) -> bool:
        return action in self.supported_actions

    def check_capability(self, action: Action):
        if not self.supports(action):
            raise CapabilityNotSupportedError(self.id, action.value, self.service_type.value)

    def hook_for(self, action: Action) -> Callable[[DeploymentTarget], Awaitable[None]]:
        self.check_capability(action)
        return getattr(self, f"on_{action.value}")

    def check_hook_for(self, action: Action) -> Callable[[DeploymentTarget], Awaitable[None]]:
        if action in CORE_ACTIONS:
            return getattr(self, f"on_{action.value}_check")
        return self._no_op_hook

    def error_hook_for(self, action: Action) -> Callable[[DeploymentTarget], Awaitable[None]]:
        if action in CORE_ACTIONS:
            return getattr(self, f"on_{action.value}_error")
        return self._no_op_hook

    async def _no_op_hook(self, target: DeploymentTarget):
        return None

    # rendering

    @abstractmethod
    def render_context(self, target: DeploymentTarget) -> Dict[str, Any]:
        pass

    def base_context(self, target: DeploymentTarget) -> Dict[str, Any]:
        return {
            "kubernetes_cluster_id": target.cluster.id,
            "kubernetes_cluster_name": target.cluster.name,
            "namespace": target.namespace,
            "execution_id": target.execution_id,
            "id": self.id,
            "name": self.name,
            "sanitized_name": self.sanitized_name,
            "helm_release_name": self.helm_release_name,
            "selector": self.selector,
            "provider": self.provider.short_name,
            "min_instances": self.sizing.min_instances,
            "max_instances": self.sizing.max_instances,
            "total_ram_in_mib": self.sizing.total_ram_in_mib,
            "start_timeout_in_seconds": self.start_timeout(),
        }

    def render_chart(self, target: DeploymentTarget, template_dir) -> ChartInfo:
        """Render ``template_dir`` into the service workspace as a chart."""
        context = self.render_context(target)
        workspace = target.cluster.renderer.render(
            template_dir, context, self.workspace_directory(target)
        )
        return ChartInfo(
            name=self.helm_release_name,
            path=str(workspace),
            namespace=target.namespace,
            timeout_in_seconds=self.start_timeout(),
            selector=self.selector,
            dry_run=target.cluster.dry_run,
        )

    async def deploy_chart(self, target: DeploymentTarget, template_dir):
        chart = self.render_chart(target, template_dir)
        status = await target.cluster.helm.upgrade(chart)
        self.logger.info(f"Release {status.name} is {status.status}")

    async def uninstall_chart(self, target: DeploymentTarget):
        await target.cluster.helm.uninstall(self.helm_release_name, target.namespace)

    # lifecycle

    def validate(self):
        """Raise ``ServiceValidationError`` on an inconsistent definition."""
        try:
            cpu_string_to_float(self.sizing.total_cpus)
            cpu_string_to_float(self.sizing.cpu_burst)
        except ValueError as e:
            raise ServiceValidationError(
                self.id, f"Invalid CPU sizing for {self.name}", str(e)
            )

    async def on_create_check(self, target: DeploymentTarget):
        self.print_action("on_create_check")
        self.validate()

    @abstractmethod
    async def on_create(self, target: DeploymentTarget):
        pass

    async def on_create_error(self, target: DeploymentTarget):
        self.print_action("on_create_error")
        await self.uninstall_chart(target)

    async def on_pause_check(self, target: DeploymentTarget):
        self.print_action("on_pause_check")

    @abstractmethod
    async def on_pause(self, target: DeploymentTarget):
        pass

    async def on_pause_error(self, target: DeploymentTarget):
        self.print_action("on_pause_error")

    async def on_delete_check(self, target: DeploymentTarget):
        self.print_action("on_delete_check")

    async def on_delete(self, target: DeploymentTarget):
        self.print_action("on_delete")
        await self.uninstall_chart(target)

    async def on_delete_error(self, target: DeploymentTarget):
        self.print_action("on_delete_error")

    async def on_upgrade(self, target: DeploymentTarget):
        raise CapabilityNotSupportedError(self.id, Action.UPGRADE.value, self.service_type.value)

    async def on_downgrade(self, target: DeploymentTarget):
        raise CapabilityNotSupportedError(self.id, Action.DOWNGRADE.value, self.service_type.value)

    async def on_backup(self, target: DeploymentTarget):
        raise CapabilityNotSupportedError(self.id, Action.BACKUP.value, self.service_type.value)

    async def on_restore(self, target: DeploymentTarget):
        raise CapabilityNotSupportedError(self.id, Action.RESTORE.value, self.service_type.value)

    async def on_clone(self, target: DeploymentTarget):
        raise CapabilityNotSupportedError(self.id, Action.CLONE.value, self.service_type.value)


async def send_progress_on_long_task(
    service: Service,
    action: Action,
    target: DeploymentTarget,
    heartbeat_interval: Optional[float] = LONG_TASK_HEARTBEAT_INTERVAL,
):
    """Run the ``action`` hook of ``service`` surrounded by progress events.

    While the hook runs, an in-progress event is sent every
    ``heartbeat_interval`` seconds. Errors that are not ``EngineError`` are
    wrapped into ``ExecutionError``.
    """
    hook = service.hook_for(action)
    label = f"{action.value} of {service.service_type.value} {service.name}"

    service.progress(target, f"{label.capitalize()} started", kind=ProgressKind.LONG_TASK_STARTED, action=action)

    async def heartbeat():
        while True:
            await asyncio.sleep(heartbeat_interval)
            service.progress(target, f"{label.capitalize()} is still in progress", action=action)

    heartbeat_task = asyncio.ensure_future(heartbeat()) if heartbeat_interval else None

    try:
        await hook(target)
    except EngineError as e:
        service.progress(
            target, f"{label.capitalize()} failed: {e}",
            level=ProgressLevel.ERROR, kind=ProgressKind.FAILED, action=action,
        )
        raise
    except Exception as e:
        service.progress(
            target, f"{label.capitalize()} failed",
            level=ProgressLevel.ERROR, kind=ProgressKind.FAILED, action=action,
        )
        raise ExecutionError(
            service.id, f"Unexpected error during {label}", f"{type(e).__name__}: {e}"
        ) from e
    finally:
        if heartbeat_task is not None:
            heartbeat_task.cancel()
            await asyncio.gather(heartbeat_task, return_exceptions=True)

    service.progress(target, f"{label.capitalize()} succeeded", kind=ProgressKind.SUCCEEDED, action=action)


class Application(Service):
    """A stateless (or storage-backed) container workload."""

    service_type = ServiceType.APPLICATION
    scope_kind = ScopeKind.APPLICATION
    selector_key = "appId"
    name_prefix = "app"
    release_prefix = "application"

    def __init__(
        self,
        id: str,
        name: str,
        action: Action,
        image: Image,
        provider: ProviderSettings,
        ports: Optional[List[Port]] = None,
        sizing: Optional[Sizing] = None,
        start_timeout_in_seconds: int = 180,
        storage: Optional[List[Storage]] = None,
        environment_variables: Optional[List[EnvironmentVariable]] = None,
        logger=None,
    ):
        super().__init__(id, name, action, sizing or Sizing(), provider, logger=logger)
        self.image = image
        self.ports = ports or []
        self.start_timeout_in_seconds = start_timeout_in_seconds
        self.storage = storage or []
        self.environment_variables = environment_variables or []

    @property
    def stateful(self) -> bool:
        return bool(self.storage)

    @property
    def private_port(self) -> Optional[int]:
        return self.ports[0].port if self.ports else None

    def start_timeout(self) -> int:
        return (self.start_timeout_in_seconds + 10) * 4

    def template_directory(self, target: DeploymentTarget):
        return target.cluster.lib_directory(self.provider.lib_directory_name, "charts", "q-application")

    def validate(self):
        super().validate()
        if not self.image.tag:
            raise ServiceValidationError(self.id, f"Application {self.name} has no image tag")
        port_numbers = [port.port for port in self.ports]
        if len(port_numbers) != len(set(port_numbers)):
            raise ServiceValidationError(self.id, f"Application {self.name} declares a port twice")

    def cpu_burst(self, target: DeploymentTarget) -> str:
        """CPU limit, raised to the request when configured lower."""
        if cpu_string_to_float(self.sizing.cpu_burst) < cpu_string_to_float(self.sizing.total_cpus):
            message = (
                f"CPU burst ({self.sizing.cpu_burst}) of {self.name} is lower than its "
                f"requested CPU ({self.sizing.total_cpus}), using {self.sizing.total_cpus}"
            )
            self.logger.warning(message)
            self.progress(target, message, level=ProgressLevel.WARN)
            return self.sizing.total_cpus
        return self.sizing.cpu_burst

    def render_context(self, target: DeploymentTarget) -> Dict[str, Any]:
        context = self.base_context(target)
        context.update(
            {
                "image_name_with_tag": self.image.full_image_name_with_tag,
                "version": self.image.tag,
                "total_cpus": self.sizing.total_cpus,
                "cpu_burst": self.cpu_burst(target),
                "private_port": self.private_port,
                "ports": [port.model_dump() for port in self.ports],
                "environment_variables": [
                    {"key": variable.key, "value": variable.value}
                    for variable in self.environment_variables
                ],
                "is_storage": self.stateful,
                "storage": [storage.model_dump() for storage in self.storage],
                "is_registry_secret": self.image.registry_url is not None,
            }
        )
        return context

    async def on_create(self, target: DeploymentTarget):
        self.print_action("on_create")
        await self.deploy_chart(target, self.template_directory(target))

    async def on_pause(self, target: DeploymentTarget):
        self.print_action("on_pause")
        kind = "statefulset" if self.stateful else "deployment"
        await target.cluster.kubectl.scale(kind, target.namespace, self.selector, 0)


class Database(Service):
    """A database, self-hosted in the cluster or managed by the provider."""

    service_type = ServiceType.DATABASE
    scope_kind = ScopeKind.DATABASE
    selector_key = "databaseId"
    create_timeout_multiplier = 3

    def __init__(
        self,
        id: str,
        name: str,
        action: Action,
        database_type: DatabaseType,
        version: str,
        options: DatabaseOptions,
        provider: ProviderSettings,
        fqdn: str = "",
        fqdn_id: str = "",
        instance_type: str = "",
        sizing: Optional[Sizing] = None,
        start_timeout_base: int = DEFAULT_START_TIMEOUT,
        logger=None,
    ):
        super().__init__(
            id, name, action, sizing or Sizing(), provider,
            start_timeout_base=start_timeout_base, logger=logger,
        )
        self.database_type = database_type
        self.version = version
        self.options = options
        self.fqdn = fqdn
        self.fqdn_id = fqdn_id
        self.instance_type = instance_type
        self.name_prefix = database_type.value
        self.release_prefix = database_type.value

    @property
    def stateful(self) -> bool:
        return True

    @property
    def private_port(self) -> Optional[int]:
        return self.options.port

    def resolve_version(self, target: DeploymentTarget) -> str:
        try:
            return target.cluster.version_lookup.resolve(
                self.database_type, self.version, managed=target.is_managed
            )
        except CommandError as e:
            raise ServiceValidationError(self.id, e.message_safe, e.message_raw)

    def template_directory(self, target: DeploymentTarget):
        if target.is_managed:
            return target.cluster.lib_directory(
                self.provider.lib_directory_name, "services", self.database_type.value
            )
        return target.cluster.lib_directory("common", "services", self.database_type.value)

    def validate(self):
        super().validate()
        if not self.options.login or not self.options.password:
            raise ServiceValidationError(self.id, f"Database {self.name} has no credentials")

    def render_context(self, target: DeploymentTarget) -> Dict[str, Any]:
        context = self.base_context(target)
        context.update(
            {
                "database_type": self.database_type.value,
                "version": self.resolve_version(target),
                "fqdn": self.fqdn,
                "fqdn_id": self.fqdn_id,
                "service_name": self.fqdn_id or self.sanitized_name,
                "database_login": self.options.login,
                "database_password": self.options.password,
                "database_port": self.options.port,
                "database_disk_size_in_gib": self.options.disk_size_in_gib,
                "database_disk_type": self.options.database_disk_type,
                "database_instance_type": self.instance_type,
                "database_total_cpus": self.sizing.total_cpus,
                "database_ram_size_in_mib": self.sizing.total_ram_in_mib,
                "publicly_accessible": self.options.publicly_accessible,
                "activate_high_availability": self.options.activate_high_availability,
                "activate_backups": self.options.activate_backups,
                "is_managed": target.is_managed,
            }
        )
        return context

    async def on_create_check(self, target: DeploymentTarget):
        await super().on_create_check(target)
        self.resolve_version(target)

    async def on_create(self, target: DeploymentTarget):
        self.print_action("on_create")
        await self.deploy_chart(target, self.template_directory(target))

    async def on_create_error(self, target: DeploymentTarget):
        self.print_action("on_create_error")
        if target.is_managed:
            # never drop a managed instance automatically
            self.logger.warning(f"Managed database {self.name} is left as is")
            return
        await self.uninstall_chart(target)

    async def on_pause(self, target: DeploymentTarget):
        self.print_action("on_pause")
        if target.is_managed:
            self.logger.info(f"Managed database {self.name} cannot be paused, skipping")
            return
        await target.cluster.kubectl.scale("statefulset", target.namespace, self.selector, 0)


class Router(Service):
    """Ingress exposing applications under a default and custom domains."""

    service_type = ServiceType.ROUTER
    scope_kind = ScopeKind.ROUTER
    selector_key = "routerId"
    name_prefix = "router"
    release_prefix = "router"
    create_timeout_multiplier = 2

    NGINX_DEFAULTS = {
        "nginx_enable_horizontal_autoscaler": "false",
        "nginx_minimum_replicas": 1,
        "nginx_maximum_replicas": 10,
        "nginx_requests_cpu": "200m",
        "nginx_requests_memory": "128Mi",
        "nginx_limit_cpu": "200m",
        "nginx_limit_memory": "128Mi",
    }

    def __init__(
        self,
        id: str,
        name: str,
        action: Action,
        default_domain: str,
        provider: ProviderSettings,
        custom_domains: Optional[List[CustomDomain]] = None,
        routes: Optional[List[Route]] = None,
        sticky_sessions_enabled: bool = False,
        start_timeout_base: int = DEFAULT_START_TIMEOUT,
        logger=None,
    ):
        super().__init__(
            id, name, action, Sizing(), provider,
            start_timeout_base=start_timeout_base, logger=logger,
        )
        self.default_domain = default_domain
        self.custom_domains = custom_domains or []
        self.routes = routes or []
        self.sticky_sessions_enabled = sticky_sessions_enabled
        self.external_ingress_hostname: Optional[str] = None

    def template_directory(self, target: DeploymentTarget):
        return target.cluster.lib_directory(self.provider.lib_directory_name, "charts", "q-ingress-tls")

    def resolved_routes(self, target: DeploymentTarget) -> List[Dict[str, Any]]:
        """Routes whose application is in the environment and exposes a port."""
        routes = []
        for route in self.routes:
            application = target.environment.application_by_name(route.application_name)
            if application is None or application.private_port is None:
                self.logger.debug(f"Route {route.path} of {self.name} has no reachable application")
                continue
            routes.append(
                {
                    "path": route.path,
                    "application_name": application.sanitized_name,
                    "application_port": application.private_port,
                }
            )
        return routes

    def render_context(self, target: DeploymentTarget) -> Dict[str, Any]:
        context = self.base_context(target)
        context.update(self.NGINX_DEFAULTS)
        context.update(
            {
                "router_default_domain": self.default_domain,
                "custom_domains": [
                    {
                        "domain": domain.domain,
                        "target_domain": domain.target_domain,
                        "domain_hash": uuid.uuid5(uuid.NAMESPACE_DNS, domain.domain).hex[:16],
                    }
                    for domain in self.custom_domains
                ],
                "has_custom_domains": bool(self.custom_domains),
                "routes": self.resolved_routes(target),
                "sticky_sessions_enabled": self.sticky_sessions_enabled,
                "external_ingress_hostname_default": self.external_ingress_hostname or "",
            }
        )
        return context

    async def on_create_check(self, target: DeploymentTarget):
        await super().on_create_check(target)

        for domain in self.custom_domains:
            result = await target.cluster.prober.check_cname_for(
                self.progress_scope, domain.domain, target.execution_id
            )
            if not result.confirmed:
                continue

            expected = domain.target_domain.rstrip(".")
            if result.value.rstrip(".") != expected:
                message = (
                    f"Invalid CNAME for {domain.domain}. It might not be an issue if user "
                    f"is using a CDN. Expected {expected}, found {result.value}"
                )
                self.logger.warning(message)
                self.progress(target, message, level=ProgressLevel.WARN)

    async def on_create(self, target: DeploymentTarget):
        self.print_action("on_create")
        if not target.cluster.dry_run:
            self.external_ingress_hostname = await target.cluster.kubectl.get_external_ingress_hostname(
                "nginx-ingress", "nginx-ingress-ingress-nginx-controller"
            )
        await self.deploy_chart(target, self.template_directory(target))

    async def on_pause(self, target: DeploymentTarget):
        self.print_action("on_pause")


class Environment:
    """Services deployed together under one namespace and execution id."""

    def __init__(
        self,
        id: str,
        name: str,
        namespace: str,
        services: Sequence[Service],
        kind: EnvironmentKind = EnvironmentKind.DEVELOPMENT,
        action: Action = Action.CREATE,
        execution_id: Optional[str] = None,
    ):
        self.id = id
        self.name = name
        self.namespace = namespace
        self.services = list(services)
        self.kind = kind
        self.action = action
        self.execution_id = execution_id or new_execution_id(id)

    def __repr__(self) -> str:
        return f"Environment(id={self.id!r}, execution_id={self.execution_id!r})"

    @property
    def applications(self) -> List[Application]:
        return [s for s in self.services if isinstance(s, Application)]

    @property
    def databases(self) -> List[Database]:
        return [s for s in self.services if isinstance(s, Database)]

    @property
    def routers(self) -> List[Router]:
        return [s for s in self.services if isinstance(s, Router)]

    @property
    def stateful_services(self) -> List[Service]:
        return [s for s in self.services if s.stateful]

    @property
    def stateless_services(self) -> List[Service]:
        return [s for s in self.services if not s.stateful]

    def application_by_name(self, name: str) -> Optional[Application]:
        for application in self.applications:
            if application.name == name:
                return application
        return None

    def ordered_services(self, action: Optional[Action] = None) -> List[Service]:
        """Stateful services before stateless ones; reversed for pause and delete.

        Databases lead the stateful group and routers close the stateless one.
        """
        stateful = self.databases + [s for s in self.stateful_services if not isinstance(s, Database)]
        stateless = [s for s in self.stateless_services if not isinstance(s, Router)] + self.routers
        ordered: List[Service] = stateful + stateless
        if (action or self.action) in (Action.PAUSE, Action.DELETE):
            ordered.reverse()
        return ordered


def new_execution_id(environment_id: str) -> str:
    return f"{environment_id}-{uuid.uuid4().hex[:12]}"
