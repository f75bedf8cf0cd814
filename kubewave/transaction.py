"""
Transaction orchestration.

A transaction runs queued environment steps in order. Each step first runs
every pre-flight check, then the lifecycle hooks in dependency order. When a
hook fails, the error hooks of the failed service and of every service that
already succeeded are run, and the step is rolled back. With a failover
environment, the failover is deployed instead; if it fails too the
transaction is unrecoverable.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .cluster import Cluster, DeploymentTarget
from .errors import (
    CapabilityNotSupportedError,
    EngineError,
    InvalidStateTransition,
    ServiceValidationError,
    TransactionCancelled,
    UnrecoverableError,
)
from .events import ProgressBus, ProgressNotifier
from .models import (
    Action,
    EngineConfig,
    ProgressKind,
    ProgressLevel,
    ProgressScope,
    ResultKind,
    ScopeKind,
    TransactionResult,
    TransactionState,
)
from .services import (
    LONG_TASK_HEARTBEAT_INTERVAL,
    Environment,
    Router,
    Service,
    send_progress_on_long_task,
)

ALLOWED_TRANSITIONS: Dict[TransactionState, Set[TransactionState]] = {
    TransactionState.PENDING: {TransactionState.EXECUTING},
    TransactionState.EXECUTING: {
        TransactionState.COMMITTED,
        TransactionState.ROLLED_BACK,
        TransactionState.UNRECOVERABLE,
    },
    TransactionState.COMMITTED: set(),
    TransactionState.ROLLED_BACK: set(),
    TransactionState.UNRECOVERABLE: set(),
}


class EnvironmentActionKind(str, Enum):
    ENVIRONMENT = "environment"
    ENVIRONMENT_WITH_FAILOVER = "environment_with_failover"


class EnvironmentAction(BaseModel):
    """An environment, optionally backed by a failover one."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: EnvironmentActionKind
    primary: Environment
    failover: Optional[Environment] = None

    @classmethod
    def environment(cls, environment: Environment) -> "EnvironmentAction":
        return cls(kind=EnvironmentActionKind.ENVIRONMENT, primary=environment)

    @classmethod
    def with_failover(cls, primary: Environment, failover: Environment) -> "EnvironmentAction":
        return cls(
            kind=EnvironmentActionKind.ENVIRONMENT_WITH_FAILOVER,
            primary=primary,
            failover=failover,
        )


def _as_environment_action(value: Union[Environment, EnvironmentAction]) -> EnvironmentAction:
    if isinstance(value, EnvironmentAction):
        return value
    return EnvironmentAction.environment(value)


class Transaction:
    """Queued environment steps committed together."""

    def __init__(
        self,
        cluster: Cluster,
        should_cancel: Optional[Callable[[], bool]] = None,
        readiness_checks: bool = True,
        heartbeat_interval: Optional[float] = LONG_TASK_HEARTBEAT_INTERVAL,
        logger=None,
    ):
        self.cluster = cluster
        self.should_cancel = should_cancel
        self.readiness_checks = readiness_checks
        self.heartbeat_interval = heartbeat_interval
        self.logger = logger or logging.getLogger(__name__)

        self.state = TransactionState.PENDING
        self.steps: List[Tuple[Action, EnvironmentAction]] = []
        self.error_hook_failures: List[EngineError] = []

    def transition(self, new_state: TransactionState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Cannot transition transaction from {self.state.value} to {new_state.value}"
            )
        self.logger.debug(f"Transaction {self.state.value} -> {new_state.value}")
        self.state = new_state

    def add_step(self, action: Action, environment: Union[Environment, EnvironmentAction]):
        if self.state != TransactionState.PENDING:
            raise InvalidStateTransition(
                f"Cannot queue a step on a {self.state.value} transaction"
            )
        self.steps.append((action, _as_environment_action(environment)))

    def deploy_environment(self, environment: Union[Environment, EnvironmentAction]):
        self.add_step(Action.CREATE, environment)

    def pause_environment(self, environment: Union[Environment, EnvironmentAction]):
        self.add_step(Action.PAUSE, environment)

    def delete_environment(self, environment: Union[Environment, EnvironmentAction]):
        self.add_step(Action.DELETE, environment)

    async def commit(self) -> TransactionResult:
        """Run every queued step, stopping at the first one that is not Ok."""
        self.transition(TransactionState.EXECUTING)

        result = await self._bootstrap_cluster()
        if result is not None:
            self.transition(TransactionState.UNRECOVERABLE)
            return result

        for action, environment_action in self.steps:
            result = await self._run_environment_action(action, environment_action)
            if not result.is_ok:
                if result.kind == ResultKind.UNRECOVERABLE_ERROR:
                    self.transition(TransactionState.UNRECOVERABLE)
                else:
                    self.transition(TransactionState.ROLLED_BACK)
                return result

        self.transition(TransactionState.COMMITTED)
        return TransactionResult.ok()

    async def _bootstrap_cluster(self) -> Optional[TransactionResult]:
        if not self.cluster.execution.bootstrap_cluster:
            return None
        creates = [env for action, env in self.steps if action == Action.CREATE]
        if not creates:
            return None

        try:
            await self.cluster.ensure_infrastructure(creates[0].primary.execution_id)
        except EngineError as e:
            self.logger.error(f"Cluster {self.cluster.name} bootstrap failed: {e.full_details()}")
            cause = e if isinstance(e, UnrecoverableError) else UnrecoverableError(e.message_safe, e.message_raw)
            return TransactionResult.unrecoverable(self.cluster.id, cause)
        return None

    async def _run_environment_action(
        self, action: Action, environment_action: EnvironmentAction
    ) -> TransactionResult:
        primary = environment_action.primary
        result = await self._run_environment(action, primary)
        if result.is_ok or environment_action.failover is None:
            return result
        if isinstance(result.cause, TransactionCancelled):
            return result

        failover = environment_action.failover
        self.logger.warning(
            f"Environment {primary.name} failed ({result.cause}), running failover environment {failover.name}"
        )
        failover_result = await self._run_environment(action, failover)
        if failover_result.is_ok:
            return failover_result

        cause = failover_result.cause
        raw = cause.full_details() if cause is not None else None
        return TransactionResult.unrecoverable(
            failover_result.service_id or failover.id,
            UnrecoverableError(
                f"Both environment {primary.name} and its failover {failover.name} failed", raw
            ),
        )

    def _cancelled(self) -> bool:
        return bool(self.should_cancel and self.should_cancel())

    async def _run_environment(self, action: Action, environment: Environment) -> TransactionResult:
        target = DeploymentTarget(self.cluster, environment)
        notifier = ProgressNotifier(
            self.cluster.bus,
            ProgressScope(kind=ScopeKind.ENVIRONMENT, id=environment.id),
            environment.execution_id,
        )
        services = environment.ordered_services(action)

        self.logger.info(
            f"Running {action.value} on environment {environment.name} "
            f"({len(services)} services, execution {environment.execution_id})"
        )
        notifier.send(
            f"{action.value.capitalize()} of environment {environment.name} started",
            kind=ProgressKind.LONG_TASK_STARTED,
            action=action,
        )

        # pre-flight, nothing is mutated yet
        for service in services:
            if self._cancelled():
                return self._cancel(notifier, action, target, [])
            try:
                service.check_capability(action)
                await service.check_hook_for(action)(target)
            except (ServiceValidationError, CapabilityNotSupportedError) as e:
                return self._check_failed(notifier, action, service, e)
            except EngineError as e:
                return self._check_failed(
                    notifier, action, service,
                    ServiceValidationError(service.id, e.message_safe, e.message_raw),
                )
            except Exception as e:
                return self._check_failed(
                    notifier, action, service,
                    ServiceValidationError(
                        service.id,
                        f"Pre-flight check of {service.name} failed",
                        f"{type(e).__name__}: {e}",
                    ),
                )

        if action == Action.CREATE and not self.cluster.dry_run:
            try:
                await self.cluster.kubectl.create_namespace(environment.namespace)
            except EngineError as e:
                self.logger.error(f"Namespace {environment.namespace} creation failed: {e.full_details()}")
                notifier.send(
                    f"Namespace {environment.namespace} of environment {environment.name} could not be created: {e}",
                    level=ProgressLevel.ERROR,
                    kind=ProgressKind.FAILED,
                    action=action,
                )
                return TransactionResult.rollback(e, environment.id)

        succeeded: List[Service] = []
        for service in services:
            if self._cancelled():
                await self._run_error_hooks(action, target, list(reversed(succeeded)))
                return self._cancel(notifier, action, target, succeeded)

            try:
                await send_progress_on_long_task(
                    service, action, target, heartbeat_interval=self.heartbeat_interval
                )
            except EngineError as e:
                self.logger.error(f"{action.value} of {service.name} failed: {e.full_details()}")
                await self._run_error_hooks(action, target, [service] + list(reversed(succeeded)))
                notifier.send(
                    f"{action.value.capitalize()} of environment {environment.name} failed: {e}",
                    level=ProgressLevel.ERROR,
                    kind=ProgressKind.FAILED,
                    action=action,
                )
                return TransactionResult.rollback(e, service.id)

            succeeded.append(service)

            if action == Action.CREATE and isinstance(service, Router) and self.readiness_checks:
                await self.cluster.prober.check_domain_for(
                    service.progress_scope, service.default_domain, environment.execution_id
                )

        notifier.send(
            f"{action.value.capitalize()} of environment {environment.name} succeeded",
            kind=ProgressKind.SUCCEEDED,
            action=action,
        )
        return TransactionResult.ok()

    def _check_failed(
        self, notifier: ProgressNotifier, action: Action, service: Service, error: EngineError
    ) -> TransactionResult:
        self.logger.error(f"Pre-flight check of {service.name} failed: {error.full_details()}")
        notifier.send(
            f"Pre-flight check of {service.name} failed: {error}",
            level=ProgressLevel.ERROR,
            kind=ProgressKind.FAILED,
            action=action,
        )
        return TransactionResult.rollback(error, service.id)

    def _cancel(
        self,
        notifier: ProgressNotifier,
        action: Action,
        target: DeploymentTarget,
        succeeded: List[Service],
    ) -> TransactionResult:
        self.logger.warning(
            f"Transaction cancelled on environment {target.environment.name} "
            f"after {len(succeeded)} services"
        )
        notifier.send(
            "Transaction has been cancelled",
            level=ProgressLevel.WARN,
            kind=ProgressKind.FAILED,
            action=action,
        )
        return TransactionResult.rollback(TransactionCancelled())

    async def _run_error_hooks(self, action: Action, target: DeploymentTarget, services: List[Service]):
        """Best effort: failures are logged and collected, never raised."""
        for service in services:
            try:
                await service.error_hook_for(action)(target)
            except EngineError as e:
                self.logger.error(f"Error hook of {service.name} failed: {e.full_details()}")
                self.error_hook_failures.append(e)
            except Exception as e:
                self.logger.exception(f"Error hook of {service.name} failed")
                self.error_hook_failures.append(
                    EngineError(f"Error hook of {service.name} failed", f"{type(e).__name__}: {e}")
                )


class Session:
    """Creates transactions on a validated engine."""

    def __init__(self, engine: "Engine", should_cancel: Optional[Callable[[], bool]] = None):
        self.engine = engine
        self.should_cancel = should_cancel

    def transaction(self) -> Transaction:
        return Transaction(
            self.engine.cluster,
            should_cancel=self.should_cancel,
            readiness_checks=self.engine.readiness_checks,
            logger=self.engine.logger,
        )

    async def run(
        self, action: Action, environment: Union[Environment, EnvironmentAction]
    ) -> TransactionResult:
        """Single-step transaction."""
        transaction = self.transaction()
        transaction.add_step(action, environment)
        return await transaction.commit()


class Engine:
    """Entry point: one cluster handle plus the execution settings."""

    def __init__(
        self,
        config: EngineConfig,
        cluster: Optional[Cluster] = None,
        bus: Optional[ProgressBus] = None,
        readiness_checks: bool = True,
        logger=None,
    ):
        self.config = config
        self.logger = logger or self._create_default_logger()
        self.cluster = cluster or Cluster(config.cluster, config.execution, bus=bus, logger=self.logger)
        self.readiness_checks = readiness_checks

    @property
    def bus(self) -> ProgressBus:
        return self.cluster.bus

    def _create_default_logger(self):
        """Create a simple default logger."""
        logging.basicConfig(level=self.config.execution.log_level)
        return logging.getLogger(__name__)

    def validate(self) -> List[str]:
        """Return the issues preventing any session from starting."""
        issues = []

        if not self.config.cluster.id:
            issues.append("Cluster id is not configured")

        workspace_root = Path(self.config.execution.workspace_root)
        try:
            workspace_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            issues.append(f"Workspace root {workspace_root} cannot be created: {e}")
        else:
            if not os.access(workspace_root, os.W_OK):
                issues.append(f"Workspace root {workspace_root} is not writable")

        return issues

    def session(self, should_cancel: Optional[Callable[[], bool]] = None) -> Session:
        issues = self.validate()
        if issues:
            raise EngineError("Engine configuration is invalid", "; ".join(issues))
        return Session(self, should_cancel=should_cancel)
