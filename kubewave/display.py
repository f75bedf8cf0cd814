"""
Rich display utilities for better UI experience.
"""

from typing import Any, Dict, List

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .models import (
    ChartInstallResult,
    EngineConfig,
    Level,
    ProgressInfo,
    ProgressKind,
    ProgressLevel,
    ResultKind,
    TransactionResult,
)


class DisplayManager:
    """Manages rich console output and UI elements."""

    def __init__(self, verbose: bool = False, console: Console = None):
        self.console = console or Console()
        self.verbose = verbose

    def print_header(self):
        """Print application header."""
        logo = """
[bold cyan]╔═══════════════════════════════════════════════════════════════════════╗
║                                                                       ║
║   ~~~  k u b e w a v e  ~~~                                           ║
║                                                                       ║
║   [dim]Environments, databases and routers on Kubernetes[/dim]                   ║
║                                                                       ║
╚═══════════════════════════════════════════════════════════════════════╝[/bold cyan]
        """
        self.console.print(logo)
        self.console.print()

    def print_config_info(self, config: EngineConfig):
        """Display configuration information."""
        table = Table(title="Configuration", box=box.ROUNDED)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="yellow")

        table.add_row("Cluster", f"{config.cluster.name} ({config.cluster.id})")
        table.add_row("Provider", config.cluster.provider.short_name)
        if config.cluster.region:
            table.add_row("Region", config.cluster.region)
        table.add_row("Workspace", str(config.execution.workspace_root))
        table.add_row("Dry Run", "Yes" if config.execution.dry_run else "No")
        table.add_row("Max Parallel", str(config.execution.max_parallel))
        table.add_row("Environments", str(len(config.environments)))

        self.console.print(table)
        self.console.print()

    def on_progress(self, info: ProgressInfo):
        """Progress listener: one line per event."""
        if info.kind == ProgressKind.IN_PROGRESS and info.level == ProgressLevel.INFO and not self.verbose:
            return

        if info.level == ProgressLevel.ERROR or info.kind == ProgressKind.FAILED:
            icon, color = "❌", "red"
        elif info.level == ProgressLevel.WARN:
            icon, color = "⚠️", "yellow"
        elif info.kind == ProgressKind.SUCCEEDED:
            icon, color = "✅", "green"
        elif info.kind == ProgressKind.LONG_TASK_STARTED:
            icon, color = "🚀", "cyan"
        else:
            icon, color = "•", "dim"

        scope = escape(f"[{info.scope.kind.value}:{info.scope.id}]")
        self.console.print(
            f"  [{color}]{icon} {scope} {escape(info.message or '')}[/{color}]"
        )

    def show_level_plan(self, levels: List[Level]):
        """Display the chart installation levels."""
        table = Table(
            title="📦 Cluster charts",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )
        table.add_column("Level", width=6)
        table.add_column("Charts", style="green")
        table.add_column("Namespaces", style="yellow")

        for level in levels:
            charts = ", ".join(level.names) if level.charts else "[dim]-[/dim]"
            namespaces = ", ".join(sorted({chart.namespace for chart in level.charts})) or "-"
            table.add_row(str(level.index), charts, namespaces)

        self.console.print(table)

    def show_chart_results(self, results: List[ChartInstallResult]):
        """Display chart installation results."""
        table = Table(title="Chart installation", box=box.ROUNDED)
        table.add_column("Status", width=8)
        table.add_column("Chart", style="cyan")
        table.add_column("Duration")
        table.add_column("Details", style="yellow")

        for result in results:
            status_icon = "✅" if result.success else "❌"
            row_style = "green" if result.success else "red"
            if result.success:
                details = result.status.status if result.status else ""
            else:
                details = (result.error or "")[:80]
            if result.backups:
                details = f"{details} (restored {len(result.backups)} backups)".strip()
            table.add_row(status_icon, result.chart_name, f"{result.duration:.1f}s", details, style=row_style)

        self.console.print(table)

    def show_transaction_result(self, result: TransactionResult, duration: float = 0.0):
        """Display the outcome of a transaction."""
        if result.kind == ResultKind.OK:
            self.console.print(
                Panel(
                    f"[bold green]🎉 Transaction committed![/bold green]\n"
                    f"[dim]Completed in {duration:.1f} seconds[/dim]",
                    border_style="green",
                    box=box.DOUBLE,
                )
            )
            return

        if result.kind == ResultKind.ROLLBACK:
            title = "↩️ Transaction rolled back"
            color = "yellow"
        else:
            title = "❌ Transaction failed, unrecoverable"
            color = "red"

        # only the safe message is shown to users
        lines = [f"[bold {color}]{title}[/bold {color}]"]
        if result.cause is not None:
            lines.append(f"{result.cause}")
        if result.service_id:
            lines.append(f"[dim]Service: {result.service_id}[/dim]")
        if self.verbose and result.cause is not None and result.cause.message_raw:
            lines.append(f"[dim]{result.cause.message_raw[:300]}[/dim]")

        self.console.print(Panel("\n".join(lines), border_style=color, box=box.DOUBLE))

    def show_validation_results(self, results: Dict[str, Any]):
        """Display validation results."""
        table = Table(
            title="🔍 Prerequisites Validation",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan",
        )

        table.add_column("Status", width=8)
        table.add_column("Component", style="cyan")
        table.add_column("Details", style="yellow")

        for result in results.get("results", []):
            status = result.get("status", "unknown")

            if status == "passed":
                status_icon = "✅"
                row_style = "green"
            elif status == "failed":
                status_icon = "❌"
                row_style = "red"
            else:
                status_icon = "⚠️"
                row_style = "yellow"

            if "tool" in result:
                component = result["tool"]
                details = result.get("message", result.get("version", ""))
            elif "checks" in result:
                component = "Kubernetes"
                failed_checks = [c for c in result["checks"] if not c.get("passed", True)]
                if failed_checks:
                    details = failed_checks[0].get("message", "Check failed")
                else:
                    details = "All checks passed"
            elif "paths" in result:
                component = "Files"
                missing = [p["path"] for p in result["paths"] if not p.get("exists")]
                details = f"Missing: {', '.join(missing)}" if missing else "All files present"
            else:
                component = "Unknown"
                details = str(result)

            table.add_row(status_icon, component, details, style=row_style)

        self.console.print(table)

        if results.get("all_passed"):
            self.console.print(
                Panel(
                    "[bold green]✅ All prerequisites validated successfully![/bold green]",
                    border_style="green",
                    box=box.DOUBLE,
                )
            )
        else:
            self.console.print(
                Panel(
                    "[bold red]❌ Prerequisites validation failed![/bold red]\n"
                    "[dim]Please fix the issues above before proceeding.[/dim]",
                    border_style="red",
                    box=box.DOUBLE,
                )
            )

    def error(self, message: str):
        """Display an error message."""
        self.console.print(f"[bold red]❌ Error:[/bold red] {message}")

    def warning(self, message: str):
        """Display a warning message."""
        self.console.print(f"[bold yellow]⚠️ Warning:[/bold yellow] {message}")

    def info(self, message: str):
        """Display an info message."""
        self.console.print(f"[bold blue]ℹ️ Info:[/bold blue] {message}")

    def success(self, message: str):
        """Display a success message."""
        self.console.print(f"[bold green]✅ Success:[/bold green] {message}")
