"""
kubewave - deploy environments of applications, databases and routers onto
Kubernetes clusters.

Environments are committed as transactions with rollback and failover, on
clusters bootstrapped by a leveled chart installer.
"""

__version__ = "1.0.0"

from .cluster import Cluster, DeploymentTarget
from .config import ConfigManager
from .models import Action, EngineConfig, TransactionResult
from .services import Application, Database, Environment, Router
from .transaction import Engine, EnvironmentAction, Session, Transaction

__all__ = [
    "Action",
    "Application",
    "Cluster",
    "ConfigManager",
    "Database",
    "DeploymentTarget",
    "Engine",
    "EngineConfig",
    "Environment",
    "EnvironmentAction",
    "Router",
    "Session",
    "Transaction",
    "TransactionResult",
]
