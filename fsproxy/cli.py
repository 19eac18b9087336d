"""
fsproxy CLI

Command-line interface for running the proxy server and talking to a
running instance.
"""

import json
import os
import signal
import sys
from pathlib import Path

import httpx
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fsproxy import __version__
from fsproxy.app.config import get_settings

app = typer.Typer(
    name="fsproxy",
    help="Sandboxed file proxy",
    add_completion=False,
)

console = Console()

# Default API URL
DEFAULT_API_URL = "http://127.0.0.1:8000"


def get_api_url() -> str:
    """Get API URL from environment or default."""
    return os.getenv("FSPROXY_API_URL", DEFAULT_API_URL).rstrip("/")


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size} B"


def _report_error(response: httpx.Response) -> None:
    try:
        body = response.json()
        console.print(f"[red]{body.get('error', response.status_code)}: {body.get('detail', '')}[/red]")
    except ValueError:
        console.print(f"[red]HTTP {response.status_code}: {response.text}[/red]")


@app.command()
def serve(
    host: str = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: int = typer.Option(None, "--port", "-p", help="Port to bind"),
    root: Path = typer.Option(None, "--root", "-r", help="Sandbox root directory"),
    metadata_url: str = typer.Option(None, "--metadata-url", "-m", help="Audit store (sqlite:///path.db)"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the fsproxy API server."""
    import uvicorn

    # Overrides flow to the server process through the environment
    if root is not None:
        os.environ["FSPROXY_SANDBOX_ROOT"] = str(root)
    if metadata_url is not None:
        os.environ["FSPROXY_METADATA_URL"] = metadata_url

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    sandbox_root = root or settings.sandbox_root

    if not sandbox_root.exists():
        console.print(f"[red]✗ Sandbox root does not exist: {sandbox_root}[/red]")
        raise typer.Exit(1)
    if not sandbox_root.is_dir():
        console.print(f"[red]✗ Sandbox root is not a directory: {sandbox_root}[/red]")
        raise typer.Exit(1)

    console.print(Panel.fit(
        f"[bold green]fsproxy Server[/bold green]\n\n"
        f"Root: [cyan]{sandbox_root.resolve()}[/cyan]\n"
        f"Files: http://{host}:{port}/files/\n"
        f"Dirs: http://{host}:{port}/dirs/\n"
        f"Docs: http://{host}:{port}/docs",
        title="Starting Server"
    ))

    pid_file = settings.pid_file
    pid_file.write_text(str(os.getpid()))
    try:
        if reload:
            # The reloader supervises worker processes and needs uvicorn.run
            uvicorn.run(
                "fsproxy.app.main:app",
                host=host,
                port=port,
                reload=True,
                log_level=settings.log_level.lower(),
            )
        else:
            from fsproxy.app.server import FSProxyServer

            config = uvicorn.Config(
                "fsproxy.app.main:app",
                host=host,
                port=port,
                log_level=settings.log_level.lower(),
            )
            FSProxyServer(config).run()
    finally:
        pid_file.unlink(missing_ok=True)


@app.command()
def stop():
    """Stop a server started with 'serve' using its PID file."""
    pid_file = get_settings().pid_file

    try:
        pid = int(pid_file.read_text().strip())
    except (FileNotFoundError, ValueError):
        console.print(f"[red]No running server recorded in {pid_file}[/red]")
        raise typer.Exit(1)

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        console.print(f"[yellow]Process {pid} is not running; removing stale PID file[/yellow]")
        pid_file.unlink(missing_ok=True)
        raise typer.Exit(1)

    console.print(f"[green]✓ Sent shutdown signal to process {pid}[/green]")


@app.command()
def health():
    """Check the health of a running server."""
    api_url = get_api_url()

    try:
        with httpx.Client(timeout=10) as client:
            response = client.get(f"{api_url}/health")
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPError as e:
        console.print(f"[red]API Error: {e}[/red]")
        console.print("[dim]Make sure the fsproxy server is running[/dim]")
        raise typer.Exit(2)

    recorder = data.get("recorder") or {}
    console.print(Panel.fit(
        f"Status: [green]{data['status']}[/green]\n"
        f"Version: {data.get('version', '-')}\n"
        f"PID: {data.get('pid', '-')}\n"
        f"Root: [cyan]{data.get('sandbox_root', '-')}[/cyan]\n"
        f"Locked paths: {data.get('lock_table_size', 0)}\n"
        f"Audit pending: {recorder.get('pending', '-')}",
        title="Server Health"
    ))


@app.command("ls")
def list_dir(
    path: str = typer.Argument("", help="Directory path inside the sandbox"),
    recursive: bool = typer.Option(False, "--recursive", "-R", help="Include nested entries"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
):
    """List a directory on the server."""
    api_url = get_api_url()

    try:
        with httpx.Client(timeout=30) as client:
            response = client.get(f"{api_url}/dirs/{path}", params={"recursive": recursive})
    except httpx.HTTPError as e:
        console.print(f"[red]API Error: {e}[/red]")
        raise typer.Exit(2)

    if response.status_code != 200:
        _report_error(response)
        raise typer.Exit(1)

    entries = response.json()
    if as_json:
        console.print(json.dumps(entries, indent=2))
        return

    table = Table(title=f"/{path}")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Size", justify="right")

    for entry in entries:
        is_dir = entry["isDirectory"]
        table.add_row(
            entry["name"] + ("/" if is_dir else ""),
            "dir" if is_dir else "file",
            "-" if is_dir else _format_size(entry["size"]),
        )

    console.print(table)
    console.print(f"\n[dim]Total: {len(entries)} entries[/dim]")


@app.command("cat")
def cat(path: str = typer.Argument(..., help="File path inside the sandbox")):
    """Stream a file from the server to stdout."""
    api_url = get_api_url()

    try:
        with httpx.Client(timeout=None) as client:
            with client.stream("GET", f"{api_url}/files/{path}") as response:
                if response.status_code != 200:
                    response.read()
                    _report_error(response)
                    raise typer.Exit(1)
                for chunk in response.iter_bytes():
                    sys.stdout.buffer.write(chunk)
                sys.stdout.buffer.flush()
    except httpx.HTTPError as e:
        console.print(f"[red]API Error: {e}[/red]")
        raise typer.Exit(2)


@app.command("put")
def put(
    local: Path = typer.Argument(..., help="Local file to upload"),
    remote: str = typer.Argument(..., help="Destination path inside the sandbox"),
    create_only: bool = typer.Option(False, "--create-only", help="Fail if the destination exists"),
):
    """Upload a local file to the server."""
    api_url = get_api_url()

    if not local.is_file():
        console.print(f"[red]✗ {local}: File not found[/red]")
        raise typer.Exit(1)

    params = {"mode": "create_only"} if create_only else None
    try:
        with httpx.Client(timeout=None) as client, local.open("rb") as f:
            response = client.put(f"{api_url}/files/{remote}", content=f, params=params)
    except httpx.HTTPError as e:
        console.print(f"[red]API Error: {e}[/red]")
        raise typer.Exit(2)

    if response.status_code not in (200, 201):
        _report_error(response)
        raise typer.Exit(1)

    data = response.json()
    action = "Created" if data["created"] else "Replaced"
    console.print(f"[green]✓ {action} {remote} ({_format_size(data['bytes_written'])})[/green]")


@app.command()
def version():
    """Show version information."""
    console.print(f"fsproxy v{__version__}")


if __name__ == "__main__":
    app()
