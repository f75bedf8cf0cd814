"""
Configuration management for the engine.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .models import Action, EngineConfig, EnvironmentSpec, ProviderSettings
from .services import Application, Database, Environment, Router, Service


class ConfigManager:
    """Load engine configuration and build runtime environments from it."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path.cwd() / "config"
        self._config: Optional[EngineConfig] = None
        self._raw_config: Dict[str, Any] = {}

    @property
    def config(self) -> Optional[EngineConfig]:
        return self._config

    def _read_file(self, config_path: Path) -> Dict[str, Any]:
        if config_path.suffix in [".yaml", ".yml"]:
            with open(config_path, "r") as f:
                return yaml.safe_load(f) or {}
        elif config_path.suffix == ".json":
            with open(config_path, "r") as f:
                return json.load(f)
        raise ValueError(f"Unsupported config format: {config_path.suffix}")

    def _resolve_path(self, config_file: str) -> Path:
        config_path = Path(config_file)

        if not config_path.exists():
            # Try relative to config directory
            config_path = self.config_path / config_file

            if not config_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_file}")

        return config_path

    def load_config(self, config_file: str) -> EngineConfig:
        """Load configuration from a YAML or JSON file."""
        self._raw_config = self._read_file(self._resolve_path(config_file))
        self._config = EngineConfig(**self._raw_config)
        return self._config

    def save_config(self, config: EngineConfig, output_file: str):
        """Save configuration to file."""
        output_path = Path(output_file)
        config_dict = config.model_dump(mode="json")

        if output_path.suffix in [".yaml", ".yml"]:
            with open(output_path, "w") as f:
                yaml.dump(config_dict, f, default_flow_style=False, allow_unicode=True)
        elif output_path.suffix == ".json":
            with open(output_path, "w") as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)
        else:
            raise ValueError(f"Unsupported output format: {output_path.suffix}")

    def merge_configs(self, *config_files: str) -> EngineConfig:
        """Deep-merge several files, later ones overriding earlier ones."""
        merged_raw: Dict[str, Any] = {}

        for config_file in config_files:
            config_path = Path(config_file)
            if config_path.suffix not in [".yaml", ".yml", ".json"]:
                continue
            merged_raw = self._deep_merge(merged_raw, self._read_file(config_path))

        self._raw_config = merged_raw
        self._config = EngineConfig(**merged_raw)
        return self._config

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def validate_config(self, config: EngineConfig) -> List[str]:
        """Validate configuration and return any issues."""
        issues = []

        if not config.environments:
            issues.append("No environments defined in configuration")

        if config.cluster.prerequisites_file is None and config.execution.bootstrap_cluster:
            issues.append("Cluster bootstrap is enabled but no prerequisites_file is set")

        environment_names = [env.name for env in config.environments]
        for name in sorted(set(environment_names)):
            if environment_names.count(name) > 1:
                issues.append(f"Environment '{name}' is defined more than once")

        for env in config.environments:
            if not env.namespace:
                issues.append(f"Environment '{env.name}' has no namespace")

            names = (
                [app.name for app in env.applications]
                + [db.name for db in env.databases]
                + [router.name for router in env.routers]
            )
            for name in sorted(set(names)):
                if names.count(name) > 1:
                    issues.append(f"Service name '{name}' is used twice in environment '{env.name}'")

            ids = (
                [app.id for app in env.applications]
                + [db.id for db in env.databases]
                + [router.id for router in env.routers]
            )
            if len(ids) != len(set(ids)):
                issues.append(f"Environment '{env.name}' has duplicate service ids")

            application_names = {app.name for app in env.applications}
            for router in env.routers:
                for route in router.routes:
                    if route.application_name not in application_names:
                        issues.append(
                            f"Router '{router.name}' routes {route.path} to unknown "
                            f"application '{route.application_name}'"
                        )

        return issues

    def build_environment(
        self,
        spec: EnvironmentSpec,
        provider: ProviderSettings,
        execution_id: Optional[str] = None,
        action: Optional[Action] = None,
    ) -> Environment:
        """Turn an environment description into runtime services.

        ``action`` overrides the action of the environment and of every service.
        """
        services: List[Service] = []

        for db in spec.databases:
            services.append(
                Database(
                    id=db.id,
                    name=db.name,
                    action=action or db.action,
                    database_type=db.database_type,
                    version=db.version,
                    options=db.options,
                    provider=provider,
                    fqdn=db.fqdn,
                    fqdn_id=db.fqdn_id,
                    instance_type=db.instance_type,
                    sizing=db.sizing,
                )
            )

        for app in spec.applications:
            services.append(
                Application(
                    id=app.id,
                    name=app.name,
                    action=action or app.action,
                    image=app.image,
                    provider=provider,
                    ports=app.ports,
                    sizing=app.sizing,
                    start_timeout_in_seconds=app.start_timeout_in_seconds,
                    storage=app.storage,
                    environment_variables=app.environment_variables,
                )
            )

        for router in spec.routers:
            services.append(
                Router(
                    id=router.id,
                    name=router.name,
                    action=action or router.action,
                    default_domain=router.default_domain,
                    provider=provider,
                    custom_domains=router.custom_domains,
                    routes=router.routes,
                    sticky_sessions_enabled=router.sticky_sessions_enabled,
                )
            )

        return Environment(
            id=spec.id,
            name=spec.name,
            namespace=spec.namespace,
            services=services,
            kind=spec.kind,
            action=action or spec.action,
            execution_id=execution_id,
        )
