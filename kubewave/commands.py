"""
Thin adapters around the ``helm`` and ``kubectl`` command-line tools.

Every call runs as a subprocess with the cluster kubeconfig and the provider
credentials in its environment. A non-zero exit raises ``CommandError`` with a
safe message and the tool's stderr as raw message.
"""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import CommandError
from .models import ChartInfo, ReleaseStatus

logger = logging.getLogger(__name__)


class CommandOutput(BaseModel):
    returncode: int
    stdout: str = ""
    stderr: str = ""


class Secret(BaseModel):
    name: str
    namespace: str = ""
    data: Dict[str, str] = Field(default_factory=dict)


async def run_command(
    args: Sequence[str],
    envs: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = None,
    input_data: Optional[bytes] = None,
) -> CommandOutput:
    """Run a command and capture its output. Kills it on timeout."""
    env = os.environ.copy()
    if envs:
        env.update(envs)

    logger.debug(f"Running command: {' '.join(args)}")

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input_data is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command {args[0]} is not installed", str(e))

    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(input=input_data), timeout=timeout
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise CommandError(
            f"Command {args[0]} timed out after {timeout} seconds",
            " ".join(args),
        )

    return CommandOutput(
        returncode=process.returncode,
        stdout=stdout.decode() if stdout else "",
        stderr=stderr.decode() if stderr else "",
    )


def _check(output: CommandOutput, message_safe: str) -> CommandOutput:
    if output.returncode != 0:
        raise CommandError(message_safe, output.stderr.strip() or None, output.returncode)
    return output


class Kubectl:
    """Cluster control-plane invocations."""

    def __init__(
        self,
        kubeconfig: Optional[Path] = None,
        envs: Optional[Dict[str, str]] = None,
        binary: str = "kubectl",
        timeout: float = 300,
    ):
        self.kubeconfig = kubeconfig
        self.envs = envs or {}
        self.binary = binary
        self.timeout = timeout

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        cmd.extend(args)
        return cmd

    async def _run(self, *args: str, message_safe: str) -> CommandOutput:
        output = await run_command(self._cmd(*args), self.envs, self.timeout)
        return _check(output, message_safe)

    async def apply(self, manifest_path: str):
        await self._run(
            "apply", "-f", str(manifest_path),
            message_safe=f"Error while applying manifest {manifest_path}",
        )

    async def get_resource_yaml(self, kind: str, namespace: str) -> str:
        output = await self._run(
            "get", kind, "-n", namespace, "-o", "yaml",
            message_safe=f"Error while getting {kind} resources in namespace {namespace}",
        )
        # kubectl prints "No resources found" on stderr with an empty list on stdout
        if "no resources found" in output.stderr.lower():
            return output.stderr
        return output.stdout

    async def create_secret_from_file(
        self, namespace: str, name: str, key: str, file_path: str
    ):
        await self._run(
            "create", "secret", "generic", name,
            "-n", namespace,
            f"--from-file={key}={file_path}",
            message_safe=f"Error while creating secret {name} in namespace {namespace}",
        )

    async def delete_secret(self, namespace: str, name: str):
        await self._run(
            "delete", "secret", name, "-n", namespace,
            message_safe=f"Error while deleting secret {name} in namespace {namespace}",
        )

    async def get_secrets(self, namespace: str) -> List[Secret]:
        output = await self._run(
            "get", "secrets", "-n", namespace, "-o", "json",
            message_safe=f"Error while listing secrets in namespace {namespace}",
        )
        try:
            items = json.loads(output.stdout or "{}").get("items", [])
        except json.JSONDecodeError as e:
            raise CommandError(
                f"Unable to parse secrets of namespace {namespace}", str(e)
            )

        return [
            Secret(
                name=item["metadata"]["name"],
                namespace=item["metadata"].get("namespace", namespace),
                data=item.get("data") or {},
            )
            for item in items
        ]

    async def scale(self, kind: str, namespace: str, selector: str, replicas: int):
        await self._run(
            "scale", kind, "-l", selector, "-n", namespace, f"--replicas={replicas}",
            message_safe=f"Error while scaling {kind} {selector} to {replicas} replicas",
        )

    async def create_namespace(self, namespace: str):
        output = await run_command(
            self._cmd("create", "namespace", namespace), self.envs, self.timeout
        )
        if output.returncode != 0 and "alreadyexists" not in output.stderr.replace(" ", "").lower():
            raise CommandError(
                f"Error while creating namespace {namespace}",
                output.stderr.strip() or None,
                output.returncode,
            )

    async def get_external_ingress_hostname(
        self, namespace: str, service_name: str
    ) -> Optional[str]:
        output = await self._run(
            "get", "svc", service_name, "-n", namespace, "-o", "json",
            message_safe=f"Error while getting service {service_name} in namespace {namespace}",
        )
        try:
            service = json.loads(output.stdout)
        except json.JSONDecodeError as e:
            raise CommandError(f"Unable to parse service {service_name}", str(e))

        ingress = service.get("status", {}).get("loadBalancer", {}).get("ingress") or []
        if not ingress:
            return None
        return ingress[0].get("hostname") or ingress[0].get("ip")


_CHART_VERSION_RE = re.compile(r"-v?(\d+\.\d+\.\d+[^\s]*)$")


def chart_version_from_name(chart: Optional[str]) -> Optional[str]:
    """Extract ``1.4.4`` from helm list's ``cert-manager-v1.4.4``."""
    if not chart:
        return None
    match = _CHART_VERSION_RE.search(chart)
    return match.group(1) if match else None


def version_tuple(version: str) -> tuple:
    numbers = re.findall(r"\d+", version.split("-")[0])
    return tuple(int(n) for n in numbers[:3])


class Helm:
    """Package manager invocations."""

    def __init__(
        self,
        kubeconfig: Optional[Path] = None,
        envs: Optional[Dict[str, str]] = None,
        binary: str = "helm",
    ):
        self.kubeconfig = kubeconfig
        self.envs = envs or {}
        self.binary = binary

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        cmd.extend(args)
        return cmd

    async def upgrade(self, chart: ChartInfo, values_files: Sequence[str] = ()) -> ReleaseStatus:
        """``helm upgrade --install`` and return the last deployment status."""
        args = [
            "upgrade", "--install", chart.name, chart.path,
            "--namespace", chart.namespace,
            "--create-namespace",
            "--history-max", "50",
            "--timeout", f"{chart.timeout_in_seconds}s",
            "--wait",
            "-o", "json",
        ]
        if chart.dry_run:
            args.append("--dry-run")
        for values_file in list(chart.values_files) + list(values_files):
            args.extend(["-f", values_file])
        for value in chart.values:
            args.extend(["--set", f"{value.key}={value.value}"])

        output = await run_command(
            self._cmd(*args), self.envs, timeout=chart.timeout_in_seconds + 30
        )
        _check(output, f"Helm upgrade of chart {chart.name} failed")

        try:
            release = json.loads(output.stdout or "{}")
        except json.JSONDecodeError:
            release = {}

        metadata = release.get("chart", {}).get("metadata", {})
        return ReleaseStatus(
            name=release.get("name", chart.name),
            namespace=release.get("namespace", chart.namespace),
            revision=release.get("version"),
            status=release.get("info", {}).get("status", "deployed"),
            chart=f"{metadata['name']}-{metadata['version']}" if metadata.get("name") else None,
            app_version=metadata.get("appVersion"),
        )

    async def uninstall(self, release_name: str, namespace: str):
        output = await run_command(
            self._cmd("uninstall", release_name, "--namespace", namespace), self.envs, timeout=600
        )
        if output.returncode != 0 and "not found" not in output.stderr.lower():
            raise CommandError(
                f"Helm uninstall of release {release_name} failed",
                output.stderr.strip() or None,
                output.returncode,
            )

    async def list_releases(self, namespace: Optional[str] = None) -> List[ReleaseStatus]:
        args = ["list", "-a", "-o", "json"]
        args.extend(["--namespace", namespace] if namespace else ["--all-namespaces"])
        output = _check(
            await run_command(self._cmd(*args), self.envs, timeout=120),
            "Unable to list helm releases",
        )
        try:
            releases = json.loads(output.stdout or "[]")
        except json.JSONDecodeError as e:
            raise CommandError("Unable to parse helm releases", str(e))

        return [
            ReleaseStatus(
                name=release["name"],
                namespace=release.get("namespace", namespace or ""),
                revision=int(release["revision"]) if release.get("revision") else None,
                status=release.get("status", "unknown"),
                chart=release.get("chart"),
                app_version=release.get("app_version"),
            )
            for release in releases
        ]

    async def deployed_chart_version(self, release_name: str, namespace: str) -> Optional[str]:
        for release in await self.list_releases(namespace):
            if release.name == release_name:
                return chart_version_from_name(release.chart)
        return None
