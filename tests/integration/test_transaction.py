"""
Integration tests for transactions over recording services.
"""

import dns.resolver
import pytest

from kubewave.errors import (
    CapabilityNotSupportedError,
    CommandError,
    EngineError,
    InvalidStateTransition,
    PrerequisiteError,
    ServiceValidationError,
    TransactionCancelled,
    UnrecoverableError,
)
from kubewave.models import (
    Action,
    ChartInfo,
    Level,
    ProgressLevel,
    ResultKind,
    ScopeKind,
    TransactionState,
)
from kubewave.services import Environment
from kubewave.transaction import Engine, EnvironmentAction, Transaction
from tests.utils.test_helpers import (
    EventLog,
    FakeHelm,
    FakeKubectl,
    FakeResolver,
    hooks_called,
    make_cluster,
    recording_application,
    recording_database,
    recording_router,
)


def make_environment(log, suffix="", fail_on=None, env_id="env-1"):
    """Database, application and router, each failing on the hooks named in ``fail_on``."""
    fail_on = fail_on or {}
    services = [
        recording_router(log, name=f"router{suffix}", fail_on=fail_on.get("router", ())),
        recording_application(log, name=f"web{suffix}", fail_on=fail_on.get("web", ())),
        recording_database(log, name=f"db{suffix}", fail_on=fail_on.get("db", ())),
    ]
    return Environment(env_id, f"staging{suffix}", "staging", services)


def one_level(cluster):
    return [Level(index=1, charts=[ChartInfo(name="q-storageclass")])]


def breaking_cert_manager(cluster):
    return [
        Level(
            index=2,
            charts=[
                ChartInfo(
                    name="cert-manager",
                    namespace="cert-manager",
                    last_breaking_version_requiring_restart="1.4.4",
                    backup_resources=["cert"],
                )
            ],
        )
    ]


@pytest.fixture
def transaction(cluster):
    return Transaction(cluster, heartbeat_interval=None)


class TestCommit:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_checks_run_before_any_hook(self, transaction, hook_log):
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert result.is_ok
        assert transaction.state == TransactionState.COMMITTED
        assert hook_log == [
            ("db", "on_create_check"),
            ("web", "on_create_check"),
            ("router", "on_create_check"),
            ("db", "on_create"),
            ("web", "on_create"),
            ("router", "on_create"),
        ]

    @pytest.mark.asyncio
    async def test_delete_runs_in_reverse_order(self, transaction, hook_log):
        transaction.delete_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert result.is_ok
        assert hooks_called(hook_log, "on_delete") == ["router", "web", "db"]

    @pytest.mark.asyncio
    async def test_redeploy_is_idempotent(self, tmp_path, hook_log):
        """Test that resubmitting a deployment leaves the chart backup set unchanged."""
        helm = FakeHelm(deployed_versions={"cert-manager": "1.3.0"})
        kubectl = FakeKubectl(
            resources={("cert", "cert-manager"): "kind: Certificate\nmetadata:\n  name: wildcard\n"}
        )
        environment = make_environment(hook_log)
        backups = []

        for _ in range(2):
            cluster = make_cluster(
                tmp_path, helm=helm, kubectl=kubectl, bootstrap=True, chart_builder=breaking_cert_manager
            )
            transaction = Transaction(cluster, heartbeat_interval=None)
            transaction.deploy_environment(environment)
            assert (await transaction.commit()).is_ok
            backups.append(kubectl.secret_names())

        assert backups[0] == backups[1] == []
        assert helm.events == [("uninstall", "cert-manager"), ("upgrade", "cert-manager")] * 2
        assert len(kubectl.applied) == 2
        assert kubectl.applied[0] == kubectl.applied[1]
        assert hooks_called(hook_log, "on_create") == ["db", "web", "router"] * 2

    @pytest.mark.asyncio
    async def test_only_create_steps_prepare_the_namespace(self, cluster, hook_log):
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))
        transaction.pause_environment(make_environment(hook_log, suffix="-b", env_id="env-b"))

        assert (await transaction.commit()).is_ok

        assert cluster.kubectl.namespaces == ["staging"]

    @pytest.mark.asyncio
    async def test_namespace_failure_rolls_back_before_any_hook(self, tmp_path, hook_log):
        cluster = make_cluster(tmp_path, kubectl=FakeKubectl(failing_namespaces=["staging"]))
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert result.service_id == "env-1"
        assert str(result.cause) == "Error while creating namespace staging"
        assert hooks_called(hook_log, "on_create") == []
        assert hooks_called(hook_log, "on_create_error") == []

    @pytest.mark.asyncio
    async def test_steps_run_in_queue_order(self, transaction, hook_log):
        transaction.deploy_environment(make_environment(hook_log, suffix="-a", env_id="env-a"))
        transaction.pause_environment(make_environment(hook_log, suffix="-b", env_id="env-b"))

        result = await transaction.commit()

        assert result.is_ok
        assert hooks_called(hook_log, "on_create") == ["db-a", "web-a", "router-a"]
        assert hooks_called(hook_log, "on_pause") == ["router-b", "web-b", "db-b"]

    @pytest.mark.asyncio
    async def test_environment_progress(self, cluster, transaction, hook_log):
        events = EventLog()
        cluster.bus.subscribe(events)
        transaction.deploy_environment(make_environment(hook_log))

        await transaction.commit()

        environment_events = [e for e in events if e.scope.kind == ScopeKind.ENVIRONMENT]
        assert "started" in environment_events[0].message
        assert "succeeded" in environment_events[-1].message


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_commit_only_once(self, transaction, hook_log):
        transaction.deploy_environment(make_environment(hook_log))
        await transaction.commit()

        with pytest.raises(InvalidStateTransition):
            await transaction.commit()

    @pytest.mark.asyncio
    async def test_no_steps_after_commit(self, transaction, hook_log):
        await transaction.commit()

        with pytest.raises(InvalidStateTransition):
            transaction.deploy_environment(make_environment(hook_log))


class TestCheckFailures:
    """Test fail-fast pre-flight checks."""

    @pytest.mark.asyncio
    async def test_check_failure_mutates_nothing(self, transaction, hook_log):
        environment = make_environment(hook_log, fail_on={"web": ["on_create_check"]})
        transaction.deploy_environment(environment)

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert isinstance(result.cause, ServiceValidationError)
        assert result.service_id == "web-id"
        assert transaction.state == TransactionState.ROLLED_BACK
        assert hook_log == [("db", "on_create_check"), ("web", "on_create_check")]

    @pytest.mark.asyncio
    async def test_unexpected_check_error_becomes_validation_error(self, transaction, hook_log):
        environment = make_environment(hook_log)

        async def broken_check(target):
            raise ValueError("bad sizing")

        environment.databases[0].on_create_check = broken_check
        transaction.deploy_environment(environment)

        result = await transaction.commit()

        assert isinstance(result.cause, ServiceValidationError)
        assert "ValueError" in result.cause.message_raw
        assert hooks_called(hook_log, "on_create") == []

    @pytest.mark.asyncio
    async def test_unsupported_action_is_rejected_before_hooks(self, transaction, hook_log):
        transaction.add_step(Action.BACKUP, make_environment(hook_log))

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert isinstance(result.cause, CapabilityNotSupportedError)
        assert result.service_id == "db-id"
        assert hook_log == []


class TestHookFailures:
    """Test error hooks after a failing lifecycle hook."""

    @pytest.mark.asyncio
    async def test_error_hooks_run_on_failed_then_succeeded_services(self, transaction, hook_log):
        environment = make_environment(hook_log, fail_on={"router": ["on_create"]})
        transaction.deploy_environment(environment)

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert isinstance(result.cause, CommandError)
        assert result.service_id == "router-id"
        assert hooks_called(hook_log, "on_create_error") == ["router", "web", "db"]

    @pytest.mark.asyncio
    async def test_services_after_the_failure_are_untouched(self, transaction, hook_log):
        environment = make_environment(hook_log, fail_on={"db": ["on_create"]})
        transaction.deploy_environment(environment)

        await transaction.commit()

        assert hooks_called(hook_log, "on_create") == ["db"]
        assert hooks_called(hook_log, "on_create_error") == ["db"]

    @pytest.mark.asyncio
    async def test_failing_error_hook_is_collected(self, transaction, hook_log):
        environment = make_environment(
            hook_log, fail_on={"web": ["on_create", "on_create_error"]}
        )
        transaction.deploy_environment(environment)

        result = await transaction.commit()

        assert isinstance(result.cause, CommandError)
        assert hooks_called(hook_log, "on_create_error") == ["web", "db"]
        assert len(transaction.error_hook_failures) == 1
        assert "on_create_error failed for web" in str(transaction.error_hook_failures[0])

    @pytest.mark.asyncio
    async def test_unexpected_hook_error_is_wrapped(self, transaction, hook_log):
        environment = make_environment(hook_log)

        async def broken_create(target):
            raise RuntimeError("segfault in plugin")

        environment.applications[0].on_create = broken_create
        transaction.deploy_environment(environment)

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert result.service_id == "web-id"
        assert "RuntimeError" in result.cause.message_raw

    @pytest.mark.asyncio
    async def test_later_steps_do_not_run(self, transaction, hook_log):
        transaction.deploy_environment(
            make_environment(hook_log, suffix="-a", env_id="env-a", fail_on={"web": ["on_create"]})
        )
        transaction.deploy_environment(make_environment(hook_log, suffix="-b", env_id="env-b"))

        result = await transaction.commit()

        assert result.kind == ResultKind.ROLLBACK
        assert not any(name.endswith("-b") for name, _ in hook_log)


class TestFailover:
    """Test failover environments."""

    @pytest.mark.asyncio
    async def test_failover_succeeds(self, transaction, hook_log):
        primary = make_environment(hook_log, fail_on={"web": ["on_create"]})
        failover = make_environment(hook_log, suffix="-fo", env_id="env-fo")
        transaction.deploy_environment(EnvironmentAction.with_failover(primary, failover))

        result = await transaction.commit()

        assert result.is_ok
        assert transaction.state == TransactionState.COMMITTED
        assert hooks_called(hook_log, "on_create_error") == ["web", "db"]
        assert hooks_called(hook_log, "on_create")[-3:] == ["db-fo", "web-fo", "router-fo"]

    @pytest.mark.asyncio
    async def test_both_environments_fail(self, transaction, hook_log):
        primary = make_environment(hook_log, fail_on={"web": ["on_create"]})
        failover = make_environment(
            hook_log, suffix="-fo", env_id="env-fo", fail_on={"db": ["on_create"]}
        )
        transaction.deploy_environment(EnvironmentAction.with_failover(primary, failover))

        result = await transaction.commit()

        assert result.kind == ResultKind.UNRECOVERABLE_ERROR
        assert transaction.state == TransactionState.UNRECOVERABLE
        assert isinstance(result.cause, UnrecoverableError)
        assert result.cause.message_safe == (
            "Both environment staging and its failover staging-fo failed"
        )
        assert result.service_id == "db-fo-id"

    @pytest.mark.asyncio
    async def test_primary_success_skips_failover(self, transaction, hook_log):
        primary = make_environment(hook_log)
        failover = make_environment(hook_log, suffix="-fo", env_id="env-fo")
        transaction.deploy_environment(EnvironmentAction.with_failover(primary, failover))

        await transaction.commit()

        assert not any(name.endswith("-fo") for name, _ in hook_log)


class TestCancellation:
    """Test cancellation between hooks."""

    @pytest.mark.asyncio
    async def test_cancel_before_checks(self, cluster, hook_log):
        transaction = Transaction(cluster, should_cancel=lambda: True, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert isinstance(result.cause, TransactionCancelled)
        assert transaction.state == TransactionState.ROLLED_BACK
        assert hook_log == []

    @pytest.mark.asyncio
    async def test_cancel_between_hooks_cleans_up(self, cluster, hook_log):
        def should_cancel():
            return bool(hooks_called(hook_log, "on_create"))

        transaction = Transaction(cluster, should_cancel=should_cancel, heartbeat_interval=None)
        primary = make_environment(hook_log)
        failover = make_environment(hook_log, suffix="-fo", env_id="env-fo")
        transaction.deploy_environment(EnvironmentAction.with_failover(primary, failover))

        result = await transaction.commit()

        assert isinstance(result.cause, TransactionCancelled)
        assert hooks_called(hook_log, "on_create") == ["db"]
        assert hooks_called(hook_log, "on_create_error") == ["db"]
        # no failover after a cancellation
        assert not any(name.endswith("-fo") for name, _ in hook_log)


class TestBootstrap:
    """Test cluster bootstrap before create steps."""

    @pytest.mark.asyncio
    async def test_bootstrap_runs_once_per_cluster(self, tmp_path, hook_log):
        helm = FakeHelm()
        cluster = make_cluster(tmp_path, helm=helm, bootstrap=True, chart_builder=one_level)

        for suffix in ("-a", "-b"):
            transaction = Transaction(cluster, heartbeat_interval=None)
            transaction.deploy_environment(make_environment(hook_log, suffix=suffix, env_id=f"env{suffix}"))
            assert (await transaction.commit()).is_ok

        assert helm.upgraded_names == ["q-storageclass"]

    @pytest.mark.asyncio
    async def test_pause_does_not_bootstrap(self, tmp_path, hook_log):
        helm = FakeHelm()
        cluster = make_cluster(tmp_path, helm=helm, bootstrap=True, chart_builder=one_level)
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.pause_environment(make_environment(hook_log))

        await transaction.commit()

        assert helm.upgraded_names == []

    @pytest.mark.asyncio
    async def test_bootstrap_failure_is_unrecoverable(self, tmp_path, hook_log):
        cluster = make_cluster(
            tmp_path, helm=FakeHelm(failing=["q-storageclass"]), bootstrap=True, chart_builder=one_level
        )
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert result.kind == ResultKind.UNRECOVERABLE_ERROR
        assert result.service_id == "cluster-1"
        assert isinstance(result.cause, UnrecoverableError)
        assert "Level 1 failed to install" in result.cause.message_safe
        assert transaction.state == TransactionState.UNRECOVERABLE
        assert hook_log == []

    @pytest.mark.asyncio
    async def test_missing_provisioning_outputs(self, tmp_path, hook_log):
        cluster = make_cluster(tmp_path, bootstrap=True)
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert isinstance(result.cause, PrerequisiteError)
        assert result.service_id == "cluster-1"


class TestReadiness:
    """Test the domain check after a router is created."""

    @pytest.mark.asyncio
    async def test_router_domain_is_probed(self, cluster, transaction, hook_log):
        events = EventLog()
        cluster.bus.subscribe(events)
        transaction.deploy_environment(make_environment(hook_log))

        await transaction.commit()

        router_events = [e.message for e in events if e.scope.kind == ScopeKind.ROUTER]
        assert "Domain router.example.com is ready! ⚡️" in router_events

    @pytest.mark.asyncio
    async def test_unresolvable_domain_only_warns(self, tmp_path, hook_log):
        cluster = make_cluster(
            tmp_path, resolvers=[FakeResolver("google", error=dns.resolver.NXDOMAIN())]
        )
        events = EventLog()
        cluster.bus.subscribe(events)
        transaction = Transaction(cluster, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        result = await transaction.commit()

        assert result.is_ok
        assert cluster.clock.now == 99 * 3
        assert any(e.level == ProgressLevel.WARN and e.scope.kind == ScopeKind.ROUTER for e in events)

    @pytest.mark.asyncio
    async def test_readiness_checks_can_be_disabled(self, cluster, hook_log):
        events = EventLog()
        cluster.bus.subscribe(events)
        transaction = Transaction(cluster, readiness_checks=False, heartbeat_interval=None)
        transaction.deploy_environment(make_environment(hook_log))

        await transaction.commit()

        assert not any("domain resolution" in (e.message or "") for e in events)


class TestEngine:
    """Test sessions on an engine."""

    @pytest.mark.asyncio
    async def test_session_runs_single_step(self, engine_config, cluster, hook_log):
        engine = Engine(engine_config, cluster=cluster)

        result = await engine.session().run(Action.CREATE, make_environment(hook_log))

        assert result.is_ok
        assert hooks_called(hook_log, "on_create") == ["db", "web", "router"]

    def test_invalid_engine_refuses_sessions(self, engine_config, cluster):
        engine_config.cluster.id = ""
        engine = Engine(engine_config, cluster=cluster)

        with pytest.raises(EngineError) as exc_info:
            engine.session()

        assert "Cluster id is not configured" in exc_info.value.message_raw

    def test_validate_creates_workspace_root(self, engine_config, cluster):
        engine = Engine(engine_config, cluster=cluster)

        assert engine.validate() == []
        assert engine_config.execution.workspace_root.is_dir()
