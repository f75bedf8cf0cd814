"""
Prerequisite validators: tools, cluster access and local files.
"""

import asyncio
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import ClusterConfig


class Validator(ABC):
    """Base class for validators."""

    @abstractmethod
    async def validate(self) -> Dict[str, Any]:
        """Perform validation and return results."""
        pass


async def _run(args: List[str], timeout: float):
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, stdout.decode() if stdout else "", stderr.decode() if stderr else ""


class ToolValidator(Validator):
    """Validate that a required tool is installed."""

    def __init__(self, tool_name: str, version_command: Optional[str] = None):
        self.tool_name = tool_name
        self.version_command = version_command or f"{tool_name} version"

    async def validate(self) -> Dict[str, Any]:
        """Check if tool is available."""
        try:
            returncode, stdout, stderr = await _run(shlex.split(self.version_command), timeout=5.0)
        except asyncio.TimeoutError:
            return {
                "status": "failed",
                "tool": self.tool_name,
                "message": f"{self.tool_name} command timed out",
            }
        except OSError as e:
            return {
                "status": "failed",
                "tool": self.tool_name,
                "message": f"{self.tool_name} not found: {e}",
            }

        if returncode == 0:
            version = stdout.strip() or stderr.strip()
            return {
                "status": "passed",
                "tool": self.tool_name,
                "version": version,
                "message": f"{self.tool_name} is available",
            }
        return {
            "status": "failed",
            "tool": self.tool_name,
            "message": f"{self.tool_name} command failed",
        }


class KubernetesValidator(Validator):
    """Validate cluster connectivity and the permissions deployments need."""

    def __init__(
        self,
        kubeconfig: Optional[Path] = None,
        namespaces: Optional[List[str]] = None,
        binary: str = "kubectl",
    ):
        self.kubeconfig = kubeconfig
        self.namespaces = namespaces or []
        self.binary = binary

    def _cmd(self, *args: str) -> List[str]:
        cmd = [self.binary]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", str(self.kubeconfig)])
        cmd.extend(args)
        return cmd

    async def validate(self) -> Dict[str, Any]:
        """Check Kubernetes access."""
        results: Dict[str, Any] = {"status": "passed", "checks": []}

        try:
            returncode, _, stderr = await _run(self._cmd("cluster-info"), timeout=10.0)
        except (OSError, asyncio.TimeoutError) as e:
            returncode, stderr = -1, str(e) or type(e).__name__

        if returncode != 0:
            results["status"] = "failed"
            results["checks"].append(
                {
                    "name": "cluster_connectivity",
                    "passed": False,
                    "message": f"Cannot connect to cluster: {stderr.strip()}",
                }
            )
            return results

        results["checks"].append(
            {"name": "cluster_connectivity", "passed": True, "message": "Connected to cluster"}
        )

        for namespace in self.namespaces:
            try:
                returncode, _, _ = await _run(
                    self._cmd("auth", "can-i", "create", "deployments", "-n", namespace),
                    timeout=10.0,
                )
            except (OSError, asyncio.TimeoutError) as e:
                returncode = -1
                message = f"Error checking permissions in {namespace}: {e}"
            else:
                message = f"Cannot create deployments in namespace {namespace}"

            if returncode == 0:
                results["checks"].append(
                    {
                        "name": f"permissions_{namespace}",
                        "passed": True,
                        "message": f"Can deploy into namespace {namespace}",
                    }
                )
            else:
                results["status"] = "warning"
                results["checks"].append(
                    {"name": f"permissions_{namespace}", "passed": False, "message": message}
                )

        return results


class FileSystemValidator(Validator):
    """Validate file system requirements."""

    def __init__(self, required_paths: Optional[List[str]] = None):
        self.required_paths = required_paths or []

    async def validate(self) -> Dict[str, Any]:
        """Check file system requirements."""
        results: Dict[str, Any] = {"status": "passed", "paths": []}

        for path_str in self.required_paths:
            path = Path(path_str)

            if path.exists():
                results["paths"].append(
                    {
                        "path": path_str,
                        "exists": True,
                        "type": "directory" if path.is_dir() else "file",
                    }
                )
            else:
                results["status"] = "warning"
                results["paths"].append(
                    {
                        "path": path_str,
                        "exists": False,
                        "message": f"Path {path_str} does not exist",
                    }
                )

        return results


class PrerequisiteValidator:
    """Main validator for checking all prerequisites."""

    def __init__(self):
        self.validators: List[Validator] = []

    def add_validator(self, validator: Validator):
        """Add a validator to the chain."""
        self.validators.append(validator)

    async def validate(
        self,
        cluster: ClusterConfig,
        namespaces: Optional[List[str]] = None,
        required_tools: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Run all validators and aggregate results."""
        required_tools = ["helm", "kubectl"] if required_tools is None else required_tools
        validators: List[Validator] = [ToolValidator(tool) for tool in required_tools]

        if "kubectl" in required_tools:
            validators.append(KubernetesValidator(cluster.kubeconfig_path, namespaces))

        required_paths = [cluster.lib_root_dir]
        if cluster.prerequisites_file is not None:
            required_paths.append(str(cluster.prerequisites_file))
        validators.append(FileSystemValidator(required_paths))

        validators.extend(self.validators)

        all_results = []
        all_passed = True
        has_warnings = False

        for validator in validators:
            result = await validator.validate()
            all_results.append(result)

            if result.get("status") == "failed":
                all_passed = False
            elif result.get("status") == "warning":
                has_warnings = True

        return {
            "all_passed": all_passed,
            "has_warnings": has_warnings,
            "results": all_results,
            "summary": self._generate_summary(all_results),
        }

    def _generate_summary(self, results: List[Dict[str, Any]]) -> str:
        """Generate a summary message from validation results."""
        failed = [r for r in results if r.get("status") == "failed"]
        warnings = [r for r in results if r.get("status") == "warning"]

        if not failed and not warnings:
            return "All prerequisites validated successfully"
        elif failed:
            return f"{len(failed)} prerequisites failed validation"
        else:
            return f"Prerequisites passed with {len(warnings)} warnings"
