"""Typer CLI for the local grid rank tracker.

Commands cover grid previews, campaign management, running and inspecting
scans, competitor reports, maintenance and the scheduler service.
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

console = Console()
app = typer.Typer(
    name="grid-tracker",
    help="Local grid rank tracker -- geo-grid map-pack scans, competitor share of voice & rank changes.",
    add_completion=False,
    no_args_is_help=True,
)

CONFIG_OPTION = typer.Option("config/settings.yaml", "--config", "-c", help="Path to settings.yaml.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level and format."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context."""
    return asyncio.run(coro)


def _get_app(config: str):
    """Build and initialise the application."""
    from src.app import GridScanApp
    grid_app = GridScanApp(config_path=config)
    grid_app.initialize()
    return grid_app


def _fmt(value, digits: int = 2, empty: str = "-") -> str:
    if value is None:
        return empty
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    return str(value)


def _fail(message: str) -> None:
    console.print("[red]✘[/red] " + message)
    raise typer.Exit(code=1)


# ------------------------------------------------------------------
# grid
# ------------------------------------------------------------------
@app.command()
def grid(
    lat: float = typer.Argument(..., help="Center latitude."),
    lng: float = typer.Argument(..., help="Center longitude."),
    size: int = typer.Option(7, "--size", "-s", help="Grid size (odd, 3-11)."),
    radius: float = typer.Option(5.0, "--radius", "-r", help="Radius in miles (center to corner)."),
    keywords: int = typer.Option(1, "--keywords", "-k", help="Keyword count for the cost estimate."),
) -> None:
    """Preview grid points and the cost of scanning them."""
    from src.modules.local_grid.grid import generate_grid_points, get_grid_stats, is_grid_center
    from src.modules.local_grid.scanner import estimate_scan_cost

    try:
        points = generate_grid_points(lat, lng, size, radius)
    except ValueError as exc:
        _fail(str(exc))

    stats = get_grid_stats(size, radius)
    cost = estimate_scan_cost(size, keywords)
    table = Table(title=f"{size}x{size} grid, {radius} mi", show_header=True, header_style="bold magenta")
    table.add_column("Row", justify="right")
    table.add_column("Col", justify="right")
    table.add_column("Lat", justify="right")
    table.add_column("Lng", justify="right")
    table.add_column("", style="cyan")
    for point in points:
        marker = "center" if is_grid_center(point, size) else ""
        table.add_row(str(point.row), str(point.col), f"{point.lat:.6f}", f"{point.lng:.6f}", marker)
    console.print(table)
    console.print(
        f"Spacing: [bold]{stats['spacing_miles']}[/bold] mi | "
        f"Lookups: [bold]{cost['total_calls']}[/bold] | "
        f"Estimated cost: [bold]${cost['estimated_cost']:.4f}[/bold]"
    )


# ------------------------------------------------------------------
# campaigns
# ------------------------------------------------------------------
@app.command("campaign-create")
def campaign_create(
    name: str = typer.Argument(..., help="Business name as it appears on Google Maps."),
    lat: float = typer.Option(..., "--lat", help="Center latitude."),
    lng: float = typer.Option(..., "--lng", help="Center longitude."),
    keywords: str = typer.Option(..., "--keywords", "-k", help="Comma-separated keywords."),
    size: Optional[int] = typer.Option(None, "--size", "-s", help="Grid size (odd, 3-11)."),
    radius: Optional[float] = typer.Option(None, "--radius", "-r", help="Radius in miles."),
    frequency: Optional[str] = typer.Option(None, "--frequency", "-f", help="daily, weekly or monthly."),
    cid: Optional[str] = typer.Option(None, "--cid", help="Google Maps CID of the business."),
    place_id: Optional[str] = typer.Option(None, "--place-id", help="Google place id."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Create a tracked campaign."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    defaults = grid_app.grid_config
    try:
        campaign = grid_app.repository.create_campaign(
            business_name=name,
            center_lat=lat,
            center_lng=lng,
            keywords=[k for k in keywords.split(",")],
            grid_size=size or defaults.get("default_grid_size", 7),
            radius_miles=radius or defaults.get("default_radius_miles", 5.0),
            scan_frequency=frequency or defaults.get("default_scan_frequency", "weekly"),
            place_id=place_id,
            gmb_cid=cid,
        )
    except ValueError as exc:
        _fail(str(exc))
    console.print(
        "[green]✔[/green] Campaign [bold]" + str(campaign.id) + "[/bold] created for "
        + campaign.business_name + " (" + ", ".join(campaign.keywords) + ")"
    )


@app.command()
def campaigns(
    all_: bool = typer.Option(False, "--all", "-a", help="Include archived campaigns."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """List campaigns."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    rows = grid_app.repository.list_campaigns(include_archived=all_)
    table = Table(title="Campaigns", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Business", style="cyan")
    table.add_column("Grid")
    table.add_column("Keywords")
    table.add_column("Status")
    table.add_column("Frequency")
    table.add_column("Next scan")
    for c in rows:
        table.add_row(
            str(c.id),
            c.business_name,
            f"{c.grid_size}x{c.grid_size} / {c.radius_miles} mi",
            ", ".join(c.keywords or []),
            c.status,
            c.scan_frequency,
            c.next_scan_at.strftime("%Y-%m-%d %H:%M") if c.next_scan_at else "due",
        )
    console.print(table)


@app.command()
def archive(
    campaign_id: int = typer.Argument(..., help="Campaign to archive."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Archive a campaign (scans are kept)."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    if not grid_app.repository.archive_campaign(campaign_id):
        _fail(f"Campaign {campaign_id} not found")
    console.print(f"[green]✔[/green] Campaign {campaign_id} archived.")


# ------------------------------------------------------------------
# scans
# ------------------------------------------------------------------
@app.command()
def scan(
    campaign_id: int = typer.Argument(..., help="Campaign to scan."),
    keywords: Optional[str] = typer.Option(None, "--keywords", "-k", help="Override keywords (comma-separated)."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run a grid scan now."""
    from src.modules.local_grid.errors import GridScanError

    _setup_logging(verbose)
    grid_app = _get_app(config)
    override = keywords.split(",") if keywords else None
    console.print(Panel(f"[bold cyan]Grid scan: campaign {campaign_id}[/bold cyan]"))

    async def _run():
        try:
            return await grid_app.orchestrator.run_scan(campaign_id, keywords=override)
        finally:
            await grid_app.close()

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(description="Scanning grid...", total=None)
        try:
            outcome = _run_async(_run())
        except GridScanError as exc:
            _fail(str(exc))

    table = Table(title=f"Scan {outcome.scan_id}", show_header=True, header_style="bold magenta")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Average rank", _fmt(outcome.avg_rank, empty="not ranking"))
    table.add_row("Share of voice", f"{outcome.share_of_voice * 100:.1f}%")
    table.add_row("Top competitor", _fmt(outcome.top_competitor))
    table.add_row("Point results", str(outcome.total_points))
    table.add_row("Failed points", str(outcome.failed_points))
    table.add_row("API calls", str(outcome.api_calls_used))
    table.add_row("Estimated cost", f"${outcome.estimated_cost:.4f}")
    console.print(table)
    console.print("[green]✔[/green] Scan complete.")


@app.command()
def status(
    scan_id: int = typer.Argument(..., help="Scan id."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show a scan's status and progress."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    progress = grid_app.orchestrator.get_scan_progress(scan_id)
    if progress is None:
        _fail(f"Scan {scan_id} not found")
    colour = {"COMPLETED": "green", "FAILED": "red", "RUNNING": "yellow"}.get(progress.status.value, "white")
    console.print(
        f"Scan {scan_id}: [{colour}]{progress.status.value}[/{colour}] {progress.progress}%"
    )
    if progress.error_message:
        console.print("[red]Error:[/red] " + progress.error_message)


@app.command()
def competitors(
    scan_id: int = typer.Argument(..., help="Completed scan id."),
    top: int = typer.Option(10, "--top", "-n", help="Number of competitors to show."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Competitor share of voice and rank changes for a scan."""
    from src.modules.local_grid.aggregator import generate_competitive_summary
    from src.modules.local_grid.types import ScanAggregation

    _setup_logging(verbose)
    grid_app = _get_app(config)
    stats = grid_app.repository.get_competitor_stats(scan_id)
    if not stats:
        _fail(f"No competitor stats for scan {scan_id}")

    table = Table(title=f"Competitors, scan {scan_id}", show_header=True, header_style="bold magenta")
    table.add_column("Business", style="cyan")
    table.add_column("Avg rank", justify="right")
    table.add_column("Top 3", justify="right")
    table.add_column("Top 10", justify="right")
    table.add_column("SoV", justify="right")
    table.add_column("Change", justify="right")
    for s in stats[:top]:
        change = _fmt(s.rank_change)
        if s.rank_change:
            change = f"[green]+{s.rank_change:.2f}[/green]" if s.rank_change > 0 else f"[red]{s.rank_change:.2f}[/red]"
        name = f"[bold]{s.business_name} *[/bold]" if s.is_target else s.business_name
        table.add_row(
            name, _fmt(s.avg_rank), str(s.times_in_top_3), str(s.times_in_top_10),
            f"{s.share_of_voice * 100:.1f}%", change,
        )
    console.print(table)

    target = next((s for s in stats if s.is_target), None)
    summary = generate_competitive_summary(
        ScanAggregation(
            stats=stats,
            target_stats=target,
            avg_rank=target.avg_rank if target else None,
            share_of_voice=target.share_of_voice if target else 0.0,
            top_competitor=stats[0].business_name,
            successful_points=0,
        )
    )
    console.print(
        f"\nPosition: [bold]{summary['target_position']}[/bold] | "
        f"Competitors ahead: {summary['competitors_ahead']}"
    )
    if summary["main_threats"]:
        console.print("Main threats: " + ", ".join(summary["main_threats"]))
    console.print(summary["recommendation"])


# ------------------------------------------------------------------
# maintenance & service
# ------------------------------------------------------------------
@app.command()
def sweep(
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", help="Age after which a scan is stale."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Fail scans stuck in PENDING or RUNNING."""
    from datetime import timedelta

    _setup_logging(verbose)
    grid_app = _get_app(config)
    max_age = timedelta(minutes=minutes) if minutes else None
    swept = grid_app.orchestrator.sweep_stale_scans(max_age)
    console.print(f"[green]✔[/green] {len(swept)} stale scans marked FAILED.")


@app.command("run-due")
def run_due(
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Max campaigns to scan."),
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Scan every campaign whose next scan is due."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    batch = limit or grid_app.config["scheduler"].get("due_batch_size", 20)

    async def _run():
        try:
            return await grid_app.orchestrator.run_due_scans(limit=batch)
        finally:
            await grid_app.close()

    outcomes = _run_async(_run())
    console.print(f"[green]✔[/green] {len(outcomes)} due scans completed.")


@app.command()
def serve(
    config: str = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run the scheduler: daily due-campaign scans plus the stale-scan sweep."""
    _setup_logging(verbose)
    grid_app = _get_app(config)
    console.print(Panel("[bold cyan]Grid tracker scheduler[/bold cyan]"))

    async def _serve():
        scheduler = grid_app.scheduler
        scheduler.register_default_jobs()
        scheduler.start()
        for job in scheduler.list_jobs():
            console.print(f"  {job['id']}: next run {job['next_run_time']}")
        try:
            await asyncio.Event().wait()
        finally:
            await grid_app.close()

    try:
        _run_async(_serve())
    except KeyboardInterrupt:
        console.print("Scheduler stopped.")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
