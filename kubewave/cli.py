"""
Command-line interface for the engine.
"""

import asyncio
import logging
import time

import click

from .cluster import Cluster
from .config import ConfigManager
from .display import DisplayManager
from .errors import EngineError
from .models import Action
from .services import new_execution_id
from .transaction import Engine, EnvironmentAction
from .validators import PrerequisiteValidator


@click.group()
@click.option("--config", "-c", default="kubewave.yaml", help="Configuration file path")
@click.option("--dry-run", is_flag=True, help="Render and simulate without changing the cluster")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config, dry_run, verbose):
    """kubewave - deploy environments onto Kubernetes clusters."""
    ctx.ensure_object(dict)

    config_manager = ConfigManager()
    try:
        engine_config = config_manager.load_config(config)
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        ctx.exit(1)

    if dry_run:
        engine_config.execution.dry_run = True
    if verbose:
        engine_config.execution.verbose = True
        engine_config.execution.log_level = "DEBUG"

    logging.basicConfig(level=engine_config.execution.log_level)

    ctx.obj["config"] = engine_config
    ctx.obj["config_manager"] = config_manager


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate configuration and prerequisites."""
    config = ctx.obj["config"]
    config_manager = ctx.obj["config_manager"]

    display = DisplayManager(verbose=config.execution.verbose)
    display.print_header()
    display.print_config_info(config)

    display.info("Validating configuration...")

    issues = config_manager.validate_config(config)
    if issues:
        display.error("Configuration issues found:")
        for issue in issues:
            display.error(f"  - {issue}")
        ctx.exit(1)

    display.success("Configuration is valid")

    validator = PrerequisiteValidator()
    results = asyncio.run(
        validator.validate(config.cluster, namespaces=[env.namespace for env in config.environments])
    )
    display.show_validation_results(results)

    if not results.get("all_passed"):
        ctx.exit(1)


def _run_environment_action(ctx, action: Action, env_name: str, failover_name: str = None):
    config = ctx.obj["config"]
    config_manager = ctx.obj["config_manager"]

    spec = config.get_environment(env_name)
    if spec is None:
        available = ", ".join(env.name for env in config.environments)
        click.echo(f"Error: Environment '{env_name}' not found. Available environments: {available}", err=True)
        ctx.exit(1)

    failover_spec = None
    if failover_name:
        failover_spec = config.get_environment(failover_name)
        if failover_spec is None:
            click.echo(f"Error: Failover environment '{failover_name}' not found", err=True)
            ctx.exit(1)

    display = DisplayManager(verbose=config.execution.verbose)
    display.print_header()
    display.info(f"Running {action.value} on environment {spec.name}")

    engine = Engine(config, logger=logging.getLogger("kubewave"))
    engine.bus.subscribe(display.on_progress)

    provider = config.cluster.provider
    primary = config_manager.build_environment(spec, provider, action=action)
    if failover_spec is not None:
        failover = config_manager.build_environment(failover_spec, provider, action=action)
        environment_action = EnvironmentAction.with_failover(primary, failover)
    else:
        environment_action = EnvironmentAction.environment(primary)

    try:
        session = engine.session()
    except EngineError as e:
        display.error(f"{e.message_safe}: {e.message_raw}")
        ctx.exit(1)

    start_time = time.time()
    result = asyncio.run(session.run(action, environment_action))
    display.show_transaction_result(result, time.time() - start_time)

    if not result.is_ok:
        ctx.exit(1)


@cli.command()
@click.argument("environment")
@click.option("--failover", "-f", help="Environment to deploy if the first one fails")
@click.pass_context
def deploy(ctx, environment, failover):
    """Deploy an environment."""
    _run_environment_action(ctx, Action.CREATE, environment, failover)


@cli.command()
@click.argument("environment")
@click.pass_context
def pause(ctx, environment):
    """Pause an environment."""
    _run_environment_action(ctx, Action.PAUSE, environment)


@cli.command()
@click.argument("environment")
@click.pass_context
def delete(ctx, environment):
    """Delete an environment."""
    _run_environment_action(ctx, Action.DELETE, environment)


@cli.command()
@click.option("--install", is_flag=True, help="Install the charts on the cluster")
@click.pass_context
def charts(ctx, install):
    """Show the cluster chart installation levels, optionally installing them."""
    config = ctx.obj["config"]

    display = DisplayManager(verbose=config.execution.verbose)
    display.print_header()

    cluster = Cluster(config.cluster, config.execution, logger=logging.getLogger("kubewave"))
    try:
        levels = cluster.build_levels()
    except EngineError as e:
        display.error(e.message_safe)
        if config.execution.verbose and e.message_raw:
            display.error(e.message_raw)
        ctx.exit(1)

    display.show_level_plan(levels)
    if not install:
        return

    cluster.bus.subscribe(display.on_progress)
    try:
        results = asyncio.run(cluster.ensure_infrastructure(new_execution_id(cluster.id)))
    except EngineError as e:
        display.error(e.message_safe)
        if config.execution.verbose and e.message_raw:
            display.error(e.message_raw)
        ctx.exit(1)

    display.show_chart_results(results)


@cli.command()
@click.pass_context
def list_envs(ctx):
    """List configured environments."""
    config = ctx.obj["config"]

    if not config.environments:
        click.echo("No environments configured")
        return

    click.echo("Available environments:")

    for env in config.environments:
        click.echo(
            f"  - {env.name} ({env.kind.value}, namespace {env.namespace}): "
            f"{len(env.applications)} applications, {len(env.databases)} databases, "
            f"{len(env.routers)} routers"
        )


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
