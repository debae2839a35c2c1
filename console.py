"""Rich console output for window/viewport size probes."""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from browser import BrowserContextConfig, ResolvedGeometry, SizePlan, ViewportSize

console = Console()


def sized_target(config: BrowserContextConfig, geometry: ResolvedGeometry) -> tuple[str, ViewportSize]:
    """Which observed size the configured width/height should match.

    Returns:
        Tuple of (target name, observed size)
    """
    if config.no_viewport:
        return "window", geometry.window
    return "viewport", geometry.viewport


def matches_request(config: BrowserContextConfig, geometry: ResolvedGeometry) -> bool:
    """True if the sized target is within the configured chrome tolerance."""
    requested = ViewportSize(config.window_width, config.window_height)
    _, observed = sized_target(config, geometry)
    return config.chrome_tolerance.matches(requested, observed)


def _format_size(size: ViewportSize | None) -> str:
    if size is None:
        return "[dim]derived[/dim]"
    return f"{size.width}x{size.height}"


def probe_start(url: str, config: BrowserContextConfig) -> None:
    """Print probe header."""
    mode = "window (no viewport)" if config.no_viewport else "viewport"
    console.print(
        f"\n[bold white]{config.window_width}x{config.window_height}[/bold white] "
        f"applied to [bold cyan]{mode}[/bold cyan] -> {url}"
    )


def probe_warning(message: str) -> None:
    console.print(f"  [bold yellow]⚠ {message}[/bold yellow]")


def geometry_report(config: BrowserContextConfig, plan: SizePlan, geometry: ResolvedGeometry) -> None:
    """Print requested vs. observed sizes for one context."""
    target, _ = sized_target(config, geometry)
    table = Table(show_header=True, header_style="bold")
    table.add_column("")
    table.add_column("requested")
    table.add_column("observed")

    table.add_row("window", _format_size(plan.window), _format_size(geometry.window))
    table.add_row("viewport", _format_size(plan.viewport), _format_size(geometry.viewport))
    table.add_row("chrome", "", f"{geometry.chrome_width}x{geometry.chrome_height}")
    console.print(table)

    if matches_request(config, geometry):
        console.print(f"  [bold green]{target} matches the requested size[/bold green]")
    else:
        probe_warning(f"{target} differs from the requested size beyond tolerance")


def result_success(summary: str) -> None:
    console.print(Panel(summary, title="Done", border_style="green"))


def result_fail(summary: str) -> None:
    console.print(Panel(summary, title="Failed", border_style="red"))
