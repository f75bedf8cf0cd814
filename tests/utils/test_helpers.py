"""
Test utility functions and helpers.
"""

import base64
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple
from unittest.mock import AsyncMock

from kubewave.cluster import Cluster
from kubewave.commands import Secret
from kubewave.errors import CommandError, ServiceValidationError
from kubewave.events import ProgressBus
from kubewave.models import (
    Action,
    ChartInfo,
    ClusterConfig,
    CustomDomain,
    DatabaseOptions,
    DatabaseType,
    ExecutionConfig,
    Image,
    Port,
    ProviderSettings,
    ReleaseStatus,
    Route,
    Storage,
)
from kubewave.probe import ReadinessProber
from kubewave.services import Application, Database, Router

PROVIDER = ProviderSettings(short_name="aws", lib_directory_name="aws")


class MockProcess:
    """Mock subprocess for testing."""

    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b""):
        self.returncode = returncode
        self.stdout = MockStream(stdout)
        self.stderr = MockStream(stderr)
        self.kill = AsyncMock()
        self.wait = AsyncMock(return_value=returncode)

    async def communicate(self, input=None):
        """Mock communicate method."""
        return await self.stdout.read(), await self.stderr.read()


class MockStream:
    """Mock stream for process stdout/stderr."""

    def __init__(self, data: bytes):
        self.data = data

    async def read(self):
        return self.data


def mock_async_subprocess_exec(
    return_value: MockProcess = None, side_effect: Exception = None
):
    """Create a mock for asyncio.create_subprocess_exec."""
    if return_value is None:
        return_value = MockProcess()

    mock = AsyncMock()
    if side_effect:
        mock.side_effect = side_effect
    else:
        mock.return_value = return_value

    return mock


class FakeClock:
    """Sleep replacement advancing a virtual clock."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class EventLog(list):
    """Progress listener collecting events. Keep a reference, buses hold it weakly."""

    def __call__(self, info):
        self.append(info)


class FakeResolver:
    """Resolver answering from a fixed list, or always failing."""

    def __init__(
        self,
        name: str,
        answers: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        calls: Optional[List[str]] = None,
    ):
        self.name = name
        self.answers = answers or []
        self.error = error
        self.calls = calls if calls is not None else []

    async def lookup(self, domain: str, record_type: str) -> List[str]:
        self.calls.append(self.name)
        if self.error is not None:
            raise self.error
        return list(self.answers)


class FakeHelm:
    """In-memory package manager."""

    def __init__(
        self,
        failing: Iterable[str] = (),
        deployed_versions: Optional[Dict[str, str]] = None,
    ):
        self.failing = set(failing)
        self.deployed_versions = deployed_versions or {}
        self.events: List[Tuple[str, str]] = []
        self.upgrades: List[ChartInfo] = []
        self.values_files: Dict[str, List[str]] = {}

    async def upgrade(self, chart: ChartInfo, values_files=()) -> ReleaseStatus:
        self.events.append(("upgrade", chart.name))
        if chart.name in self.failing:
            raise CommandError(f"Helm upgrade of chart {chart.name} failed", "Error: timed out waiting")
        self.upgrades.append(chart)
        self.values_files[chart.name] = list(values_files)
        return ReleaseStatus(name=chart.name, namespace=chart.namespace, revision=1, status="deployed")

    async def uninstall(self, release_name: str, namespace: str):
        self.events.append(("uninstall", release_name))

    async def list_releases(self, namespace: Optional[str] = None) -> List[ReleaseStatus]:
        return []

    async def deployed_chart_version(self, release_name: str, namespace: str) -> Optional[str]:
        return self.deployed_versions.get(release_name)

    @property
    def upgraded_names(self) -> List[str]:
        return [chart.name for chart in self.upgrades]


class FakeKubectl:
    """In-memory control plane keeping secrets and resource listings."""

    def __init__(
        self,
        resources: Optional[Dict[Tuple[str, str], str]] = None,
        failing_namespaces: Iterable[str] = (),
    ):
        self.resources = resources or {}
        self.failing_namespaces = set(failing_namespaces)
        self.namespaces: List[str] = []
        self.secrets: Dict[str, Dict[str, Secret]] = {}
        self.applied: List[str] = []
        self.scaled: List[Tuple[str, str, str, int]] = []

    async def apply(self, manifest_path: str):
        self.applied.append(Path(manifest_path).read_text())

    async def get_resource_yaml(self, kind: str, namespace: str) -> str:
        return self.resources.get((kind, namespace), "No resources found in this namespace.")

    async def create_secret_from_file(self, namespace: str, name: str, key: str, file_path: str):
        content = Path(file_path).read_bytes()
        self.secrets.setdefault(namespace, {})[name] = Secret(
            name=name, namespace=namespace, data={key: base64.b64encode(content).decode()}
        )

    async def delete_secret(self, namespace: str, name: str):
        self.secrets.get(namespace, {}).pop(name, None)

    async def get_secrets(self, namespace: str) -> List[Secret]:
        return list(self.secrets.get(namespace, {}).values())

    async def scale(self, kind: str, namespace: str, selector: str, replicas: int):
        self.scaled.append((kind, namespace, selector, replicas))

    async def create_namespace(self, namespace: str):
        if namespace in self.failing_namespaces:
            raise CommandError(f"Error while creating namespace {namespace}", "Error from server (Forbidden)")
        self.namespaces.append(namespace)

    async def get_external_ingress_hostname(self, namespace: str, service_name: str) -> Optional[str]:
        return "lb.example.com"

    def secret_names(self) -> List[str]:
        return sorted(name for secrets in self.secrets.values() for name in secrets)


def make_cluster(
    tmp_path: Path,
    helm: Optional[FakeHelm] = None,
    kubectl: Optional[FakeKubectl] = None,
    resolvers: Optional[List[Any]] = None,
    bootstrap: bool = False,
    chart_builder=None,
    **cluster_kwargs,
) -> Cluster:
    """Cluster handle wired to in-memory fakes and a fake clock."""
    bus = ProgressBus()
    clock = FakeClock()
    prober = ReadinessProber(
        bus,
        resolvers=resolvers or [FakeResolver("google", answers=["1.2.3.4"])],
        sleep=clock.sleep,
    )
    config = ClusterConfig(id="cluster-1", name="test-cluster", provider=PROVIDER, **cluster_kwargs)
    execution = ExecutionConfig(workspace_root=tmp_path / "workspace", bootstrap_cluster=bootstrap)
    cluster = Cluster(
        config,
        execution,
        bus=bus,
        helm=helm or FakeHelm(),
        kubectl=kubectl or FakeKubectl(),
        prober=prober,
        chart_builder=chart_builder,
    )
    cluster.clock = clock
    return cluster


class RecordingMixin:
    """Replaces lifecycle hooks with recorders that can be told to fail."""

    HOOKS = (
        "on_create_check", "on_create", "on_create_error",
        "on_pause_check", "on_pause", "on_pause_error",
        "on_delete_check", "on_delete", "on_delete_error",
    )

    def setup_recording(self, log: List[Tuple[str, str]], fail_on: Iterable[str] = ()):
        self.log = log
        self.fail_on = set(fail_on)
        return self

    async def _record(self, hook_name: str):
        self.log.append((self.name, hook_name))
        if hook_name in self.fail_on:
            if hook_name.endswith("_check"):
                raise ServiceValidationError(self.id, f"{hook_name} failed for {self.name}")
            raise CommandError(f"{hook_name} failed for {self.name}", "raw diagnostic")

    async def on_create_check(self, target):
        await self._record("on_create_check")

    async def on_create(self, target):
        await self._record("on_create")

    async def on_create_error(self, target):
        await self._record("on_create_error")

    async def on_pause_check(self, target):
        await self._record("on_pause_check")

    async def on_pause(self, target):
        await self._record("on_pause")

    async def on_pause_error(self, target):
        await self._record("on_pause_error")

    async def on_delete_check(self, target):
        await self._record("on_delete_check")

    async def on_delete(self, target):
        await self._record("on_delete")

    async def on_delete_error(self, target):
        await self._record("on_delete_error")


class RecordingApplication(RecordingMixin, Application):
    pass


class RecordingDatabase(RecordingMixin, Database):
    pass


class RecordingRouter(RecordingMixin, Router):
    pass


def make_application(
    name: str = "web",
    id: Optional[str] = None,
    action: Action = Action.CREATE,
    storage: bool = False,
    **kwargs,
) -> Application:
    return Application(
        id=id or f"{name}-id",
        name=name,
        action=action,
        image=Image(name=name, tag="1.0.0"),
        provider=PROVIDER,
        ports=[Port(id="p1", port=8080, publicly_accessible=True)],
        storage=[Storage(id="s1", name="data", mount_point="/data")] if storage else [],
        **kwargs,
    )


def make_database(
    name: str = "db",
    id: Optional[str] = None,
    action: Action = Action.CREATE,
    version: str = "13",
    **kwargs,
) -> Database:
    return Database(
        id=id or f"{name}-id",
        name=name,
        action=action,
        database_type=DatabaseType.POSTGRESQL,
        version=version,
        options=DatabaseOptions(login="admin", password="secret"),
        provider=PROVIDER,
        **kwargs,
    )


def make_router(
    name: str = "router",
    id: Optional[str] = None,
    action: Action = Action.CREATE,
    custom_domains: Optional[List[CustomDomain]] = None,
    routes: Optional[List[Route]] = None,
    **kwargs,
) -> Router:
    return Router(
        id=id or f"{name}-id",
        name=name,
        action=action,
        default_domain=f"{name}.example.com",
        provider=PROVIDER,
        custom_domains=custom_domains,
        routes=routes or [Route(path="/", application_name="web")],
        **kwargs,
    )


def recording_application(log, name="web", fail_on=(), **kwargs) -> RecordingApplication:
    service = RecordingApplication(
        id=f"{name}-id",
        name=name,
        action=kwargs.pop("action", Action.CREATE),
        image=Image(name=name, tag="1.0.0"),
        provider=PROVIDER,
        ports=[Port(id="p1", port=8080)],
        **kwargs,
    )
    return service.setup_recording(log, fail_on)


def recording_database(log, name="db", fail_on=(), **kwargs) -> RecordingDatabase:
    service = RecordingDatabase(
        id=f"{name}-id",
        name=name,
        action=kwargs.pop("action", Action.CREATE),
        database_type=DatabaseType.POSTGRESQL,
        version="13",
        options=DatabaseOptions(login="admin", password="secret"),
        provider=PROVIDER,
        **kwargs,
    )
    return service.setup_recording(log, fail_on)


def recording_router(log, name="router", fail_on=(), **kwargs) -> RecordingRouter:
    service = RecordingRouter(
        id=f"{name}-id",
        name=name,
        action=kwargs.pop("action", Action.CREATE),
        default_domain=f"{name}.example.com",
        provider=PROVIDER,
        **kwargs,
    )
    return service.setup_recording(log, fail_on)


def hooks_called(log: List[Tuple[str, str]], hook_name: str) -> List[str]:
    """Names of the services whose ``hook_name`` ran, in call order."""
    return [name for name, hook in log if hook == hook_name]
