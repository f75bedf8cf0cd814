"""
Chart backup and restore.

Before a chart is reinstalled across a breaking version, resources that the
uninstall would destroy (custom resources, mostly) are snapshotted as YAML
into a secret named ``<chart>-<resource>-q-backup``. Once the chart is back,
the snapshots are applied again and the secrets deleted.
"""

import base64
import binascii
import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel

from .commands import Kubectl
from .errors import CommandError
from .models import ChartInfo

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = "-q-backup"

# Server-populated metadata which must not be re-applied
_VOLATILE_METADATA = ("resourceVersion", "uid", "creationTimestamp", "generation", "managedFields")


class BackupInfo(BaseModel):
    name: str
    path: str
    secret_name: str


def backup_secret_name(chart_name: str, resource: str) -> str:
    return f"{chart_name}-{resource}{BACKUP_SUFFIX}"


def _clean_items(content: str) -> List[Dict[str, Any]]:
    document = yaml.safe_load(content) or {}
    if document.get("kind") == "List" or "items" in document:
        items = document.get("items") or []
    else:
        items = [document]

    cleaned = []
    for item in items:
        metadata = item.get("metadata", {})
        for key in _VOLATILE_METADATA:
            metadata.pop(key, None)
        item.pop("status", None)
        cleaned.append(item)
    return cleaned


async def prepare_chart_backup(
    kubectl: Kubectl,
    workspace_dir: Path,
    chart: ChartInfo,
    backup_resources: List[str],
) -> List[BackupInfo]:
    """Snapshot ``backup_resources`` of the chart namespace into secrets.

    A snapshot whose secret already exists is kept as is, so running the same
    upgrade twice never stacks backups.
    """
    existing = {secret.name for secret in await kubectl.get_secrets(chart.namespace)}
    backup_dir = Path(workspace_dir) / "backups"
    backups: List[BackupInfo] = []

    for resource in backup_resources:
        secret_name = backup_secret_name(chart.name, resource)
        if secret_name in existing:
            logger.info(f"Backup {secret_name} already exists, keeping it")
            continue

        try:
            content = await kubectl.get_resource_yaml(resource, chart.namespace)
        except CommandError as e:
            logger.error(f"Kubectl error while backing up {resource}: {e.message_safe}")
            continue

        if not content or "no resources found" in content.lower():
            continue

        try:
            items = _clean_items(content)
        except yaml.YAMLError as e:
            raise CommandError(
                f"Error while editing YAML backup file for {resource}.", str(e)
            )
        if not items:
            continue

        path = backup_dir / f"{chart.name}-{resource}.yaml"
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                yaml.safe_dump_all(items, f, default_flow_style=False)
        except OSError as e:
            raise CommandError(
                f"Error while creating YAML backup file for {resource}.", str(e)
            )

        await kubectl.create_secret_from_file(chart.namespace, secret_name, resource, str(path))
        backups.append(BackupInfo(name=resource, path=str(path), secret_name=secret_name))
        logger.info(f"Backed up {resource} of chart {chart.name} into secret {secret_name}")

    return backups


async def apply_chart_backup(
    kubectl: Kubectl, workspace_dir: Path, chart: ChartInfo
) -> List[str]:
    """Re-apply the chart's snapshots and delete their secrets."""
    restored: List[str] = []
    restore_dir = Path(workspace_dir) / "restores"
    prefix = f"{chart.name}-"

    for secret in await kubectl.get_secrets(chart.namespace):
        if not (secret.name.startswith(prefix) and secret.name.endswith(BACKUP_SUFFIX)):
            continue

        try:
            content = "".join(
                base64.b64decode(value).decode() for value in secret.data.values()
            )
        except (binascii.Error, UnicodeDecodeError) as e:
            raise CommandError(f"Unable to decode backup secret {secret.name}", str(e))

        if not content.strip():
            logger.warning(f"Backup secret {secret.name} has no content, deleting it")
            await kubectl.delete_secret(chart.namespace, secret.name)
            continue

        restore_dir.mkdir(parents=True, exist_ok=True)
        path = restore_dir / f"{secret.name}.yaml"
        path.write_text(content)

        await kubectl.apply(str(path))
        await kubectl.delete_secret(chart.namespace, secret.name)
        restored.append(secret.name)
        logger.info(f"Restored backup {secret.name} for chart {chart.name}")

    return restored
