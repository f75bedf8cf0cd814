"""
Shared pytest fixtures and test configuration.
"""

import json
from typing import Any, Dict, List, Tuple

import pytest
import yaml

from kubewave.config import ConfigManager
from kubewave.events import ProgressBus
from kubewave.models import (
    ClusterConfig,
    EngineConfig,
    ExecutionConfig,
    FeatureFlags,
    ProgressInfo,
    ProviderSettings,
)
from tests.utils.test_helpers import FakeClock, FakeHelm, FakeKubectl, make_cluster


@pytest.fixture
def provider():
    """Provider settings used by every service."""
    return ProviderSettings(short_name="aws", lib_directory_name="aws")


@pytest.fixture
def prerequisites_file(tmp_path):
    """Provisioning outputs file as written by the infrastructure step."""
    path = tmp_path / "qovery-tf-config.json"
    path.write_text(
        json.dumps(
            {
                "loki_storage_config_access_id": "AKIA123",
                "loki_storage_config_secret_key": "secret",
                "loki_storage_config_region": "eu-west-3",
                "loki_storage_config_host": "s3.eu-west-3.amazonaws.com",
                "loki_storage_config_bucket_name": "loki-bucket",
            }
        )
    )
    return path


@pytest.fixture
def cluster_config(provider, prerequisites_file):
    return ClusterConfig(
        id="cluster-1",
        name="test-cluster",
        region="eu-west-3",
        provider=provider,
        prerequisites_file=prerequisites_file,
        managed_dns_name="example.com",
        managed_dns_resolvers=["1.1.1.1"],
        features=FeatureFlags(),
    )


@pytest.fixture
def engine_config(cluster_config, tmp_path):
    return EngineConfig(
        cluster=cluster_config,
        execution=ExecutionConfig(workspace_root=tmp_path / "workspace"),
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_helm():
    return FakeHelm()


@pytest.fixture
def fake_kubectl():
    return FakeKubectl()


@pytest.fixture
def cluster(tmp_path, fake_helm, fake_kubectl):
    """Cluster wired to in-memory helm and kubectl, without bootstrap."""
    return make_cluster(tmp_path, helm=fake_helm, kubectl=fake_kubectl)


@pytest.fixture
def hook_log() -> List[Tuple[str, str]]:
    """Shared ``(service name, hook)`` call log."""
    return []


@pytest.fixture
def progress_events():
    """Bus plus a listener collecting every event.

    The listener is returned too, the bus only holds it weakly.
    """
    bus = ProgressBus()
    events: List[ProgressInfo] = []

    def listener(info: ProgressInfo):
        events.append(info)

    bus.subscribe(listener)
    return bus, events, listener


@pytest.fixture
def config_manager():
    """ConfigManager instance for testing."""
    return ConfigManager()


@pytest.fixture
def sample_config_data(prerequisites_file, tmp_path) -> Dict[str, Any]:
    return {
        "cluster": {
            "id": "cluster-1",
            "name": "test-cluster",
            "region": "eu-west-3",
            "provider": {"short_name": "aws", "lib_directory_name": "aws"},
            "prerequisites_file": str(prerequisites_file),
            "managed_dns_name": "example.com",
            "features": {"metrics_history_enabled": True},
        },
        "execution": {
            "workspace_root": str(tmp_path / "workspace"),
            "max_parallel": 3,
            "log_level": "INFO",
        },
        "environments": [
            {
                "id": "env-prod",
                "name": "production",
                "namespace": "prod",
                "kind": "production",
                "applications": [
                    {
                        "id": "app-1",
                        "name": "web",
                        "image": {"name": "web", "tag": "abc123"},
                        "ports": [{"id": "p1", "port": 8080, "publicly_accessible": True}],
                    }
                ],
                "databases": [
                    {
                        "id": "db-1",
                        "name": "main",
                        "database_type": "postgresql",
                        "version": "13",
                        "options": {"login": "admin", "password": "secret"},
                    }
                ],
                "routers": [
                    {
                        "id": "router-1",
                        "name": "front",
                        "default_domain": "front.example.com",
                        "routes": [{"path": "/", "application_name": "web"}],
                    }
                ],
            },
            {
                "id": "env-staging",
                "name": "staging",
                "namespace": "staging",
            },
        ],
    }


@pytest.fixture
def sample_config_file(tmp_path, sample_config_data):
    """Create sample configuration file for CLI testing."""
    config_file = tmp_path / "kubewave.yaml"
    with open(config_file, "w") as f:
        yaml.dump(sample_config_data, f)
    return config_file
