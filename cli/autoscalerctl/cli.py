"""
autoscalerctl - Inspect and steer a running runner autoscaler.

Usage:
    autoscalerctl status
    autoscalerctl runners --limit 20
    autoscalerctl runner 42
    autoscalerctl kill-idle --yes
"""

import os
import sys

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

DEFAULT_SERVER = "http://localhost:8000"

STATE_COLORS = {
    "creation_queued": "yellow",
    "created": "yellow",
    "provisioned": "green",
    "processing": "cyan",
    "deletion_queued": "magenta",
    "deleted": "dim",
    "failure": "red",
    "vanished_on_cloud": "red",
    "cleanup": "magenta",
    "cancelled": "dim",
}


def get_server_url() -> str:
    """Get the autoscaler URL from env or default."""
    return os.environ.get("AUTOSCALER_SERVER", DEFAULT_SERVER)


def api_request(method: str, path: str, server: str | None = None, **kwargs):
    """Call the autoscaler API and exit with a readable error on failure."""
    server_url = server or get_server_url()
    try:
        with httpx.Client(base_url=server_url, timeout=30.0) as client:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to {server_url}")
        console.print("Is the autoscaler running?")
        sys.exit(1)
    except httpx.HTTPStatusError as e:
        if e.response.status_code == 404:
            console.print(f"[red]Error:[/red] Not found: {path}")
        else:
            console.print(f"[red]Error:[/red] API returned {e.response.status_code}")
            console.print(e.response.text)
        sys.exit(1)


def colored_state(state: str | None) -> str:
    if not state:
        return "-"
    color = STATE_COLORS.get(state, "white")
    return f"[{color}]{state}[/{color}]"


@click.group()
@click.version_option(package_name="runner-autoscaler")
def cli():
    """autoscalerctl - Operator CLI for the runner autoscaler."""
    pass


@cli.command()
@click.option("--server", "-s", default=None, help="Autoscaler URL")
def status(server: str | None):
    """Show control loop gauges."""
    stats = api_request("GET", "/api/stats", server)

    table = Table(title="Runners by state")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for state, count in sorted(stats["runners_by_state"].items()):
        table.add_row(colored_state(state), str(count))
    console.print(table)

    jobs = ", ".join(f"{k}={v}" for k, v in sorted(stats["jobs_by_state"].items())) or "none"
    servers = ", ".join(f"{k}={v}" for k, v in sorted(stats["servers_by_cloud"].items())) or "none"
    console.print(Panel.fit(
        f"Queued creates: [cyan]{stats['queued_creates']}[/cyan]\n"
        f"Queued deletes: [cyan]{stats['queued_deletes']}[/cyan]\n"
        f"In flight: [cyan]{stats['in_flight']}[/cyan]\n"
        f"Jobs: {jobs}\n"
        f"Servers: {servers}\n"
        f"Banned: {', '.join(stats['banned']) or 'none'}",
        title=f"Collected {stats['collected_at']}",
    ))


@cli.command()
@click.option("--limit", "-l", default=50, help="Number of runners to show")
@click.option("--offset", "-o", default=0, help="Skip this many runners")
@click.option("--server", "-s", default=None, help="Autoscaler URL")
def runners(limit: int, offset: int, server: str | None):
    """List the most recent runners."""
    data = api_request("GET", "/api/runners", server, params={"limit": limit, "offset": offset})

    table = Table()
    for column in ("ID", "Hostname", "Owner", "Size", "Cloud", "State", "Online"):
        table.add_column(column)
    for runner in data:
        table.add_row(
            str(runner["id"]),
            runner["hostname"] or "-",
            runner["owner"],
            f"{runner['size']}/{runner['arch']}",
            runner["cloud"] or "-",
            colored_state(runner["last_state"]),
            "yes" if runner["is_online"] else "no",
        )
    console.print(table)


@cli.command()
@click.option("--limit", "-l", default=50, help="Number of jobs to show")
@click.option("--offset", "-o", default=0, help="Skip this many jobs")
@click.option("--server", "-s", default=None, help="Autoscaler URL")
def jobs(limit: int, offset: int, server: str | None):
    """List the most recent jobs."""
    data = api_request("GET", "/api/jobs", server, params={"limit": limit, "offset": offset})

    table = Table()
    for column in ("ID", "GitHub job", "Repository", "State", "Size", "Runner", "Queued"):
        table.add_column(column)
    for job in data:
        table.add_row(
            str(job["id"]),
            str(job["github_job_id"]),
            job["repository"],
            job["state"],
            job["requested_size"] or "-",
            str(job["runner_id"]) if job["runner_id"] is not None else "-",
            job["queue_time"] or "-",
        )
    console.print(table)


@cli.command()
@click.argument("runner_id", type=int)
@click.option("--server", "-s", default=None, help="Autoscaler URL")
def runner(runner_id: int, server: str | None):
    """Show one runner and its lifecycle."""
    data = api_request("GET", f"/api/runners/{runner_id}", server)

    console.print(Panel.fit(
        f"Hostname: [cyan]{data['hostname'] or '-'}[/cyan]\n"
        f"Owner: {data['owner']}\n"
        f"Size: {data['size']}/{data['arch']} ({data['profile']})\n"
        f"Cloud: {data['cloud'] or '-'} ({data['cloud_server_id'] or '-'})\n"
        f"Address: {data['ipv4'] or '-'}\n"
        f"State: {colored_state(data['last_state'])}",
        title=f"Runner {data['id']}",
    ))

    table = Table(title="Lifecycle")
    table.add_column("Time")
    table.add_column("Status")
    table.add_column("Event")
    for event in data["lifecycle"]:
        table.add_row(event["event_time"], colored_state(event["status"]), event["event"])
    console.print(table)


@cli.command("kill-idle")
@click.option("--yes", "-y", is_flag=True, help="Don't ask for confirmation")
@click.option("--server", "-s", default=None, help="Autoscaler URL")
def kill_idle(yes: bool, server: str | None):
    """Queue deletion of every runner that isn't processing a job."""
    if not yes and not click.confirm("Delete every runner that isn't processing a job?"):
        console.print("Aborted")
        return

    data = api_request("POST", "/api/runners/kill-non-processing", server)
    console.print(f"[green]{data['message']}[/green]")
    for killed in data["killed_runners"]:
        console.print(f"  {killed['id']}: {killed['hostname'] or '-'}")


if __name__ == "__main__":
    cli()
