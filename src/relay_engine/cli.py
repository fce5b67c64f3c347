"""Typer CLI for Relay-Engine."""

import json

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="relay", help="Relay-Engine: webhook automation runner")
console = Console()

_STATUS_STYLES = {
    "completed": "green",
    "succeeded": "green",
    "failed": "red",
    "skipped": "yellow",
    "running": "cyan",
    "pending": "dim",
}


def _parse_data(data: str | None) -> dict:
    if not data:
        return {}
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Invalid JSON:[/bold red] {e}")
        raise typer.Exit(2)
    if not isinstance(parsed, dict):
        console.print("[bold red]Invalid JSON:[/bold red] expected an object")
        raise typer.Exit(2)
    return parsed


def _request(method: str, url: str, **kwargs) -> dict | list:
    import httpx

    try:
        resp = httpx.request(method, url, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)
    if resp.status_code >= 400:
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        console.print(f"[bold red]HTTP {resp.status_code}[/bold red] — {detail}")
        raise typer.Exit(1)
    return resp.json()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Relay-Engine API server."""
    import uvicorn
    from relay_engine.app import create_app

    console.print(f"[bold green]Starting Relay-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def execute(
    automation_id: str = typer.Argument(..., help="Automation to run"),
    data: str = typer.Option(None, "--data", "-d", help="Trigger data as a JSON object"),
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
    timeout: float = typer.Option(600.0, help="Seconds to wait for the run to finish"),
):
    """Run an automation and wait for its result."""
    result = _request(
        "POST",
        f"{url}/api/automations/{automation_id}/execute",
        json={"trigger_data": _parse_data(data)},
        timeout=timeout,
    )
    status = result["status"]
    style = _STATUS_STYLES.get(status, "white")
    console.print(
        f"[bold {style}]{status.upper()}[/bold {style}] — "
        f"{result['completed_steps']}/{result['total_steps']} steps "
        f"in {result['execution_time_ms']} ms"
    )
    console.print(f"  Execution: {result['execution_id']}")
    if result.get("error_message"):
        console.print(f"  Error: {result['error_message']}")
    if not result["success"]:
        raise typer.Exit(1)


@app.command("test-webhook")
def test_webhook(
    webhook_id: str = typer.Argument(..., help="Webhook to fire"),
    data: str = typer.Option(None, "--data", "-d", help="Test payload as a JSON object"),
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Fire a single test request at a webhook."""
    result = _request(
        "POST",
        f"{url}/api/webhooks/{webhook_id}/test",
        json={"test_payload": _parse_data(data)},
        timeout=330,
    )
    if result["success"]:
        console.print(
            f"[bold green]OK[/bold green] — HTTP {result['status_code']} "
            f"in {result['response_time_ms']} ms"
        )
    else:
        console.print(f"[bold red]FAILED[/bold red] — {result['error_message']}")
    if result.get("response_body"):
        console.print(result["response_body"], markup=False)
    if not result["success"]:
        raise typer.Exit(1)


@app.command()
def executions(
    automation_id: str = typer.Argument(..., help="Automation whose runs to list"),
    limit: int = typer.Option(20, min=1, max=200, help="Number of runs to show"),
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """List the most recent runs of an automation."""
    rows = _request(
        "GET",
        f"{url}/api/automations/{automation_id}/executions",
        params={"limit": limit},
        timeout=10,
    )
    table = Table(title=f"Executions of {automation_id}")
    table.add_column("Execution")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Started")
    table.add_column("Error")
    for row in rows:
        style = _STATUS_STYLES.get(row["status"], "white")
        table.add_row(
            row["id"],
            f"[{style}]{row['status']}[/{style}]",
            f"{row['completed_steps']}/{row['total_steps']}",
            row["started_at"],
            row.get("error_message") or "",
        )
    console.print(table)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Relay-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
