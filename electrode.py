#!/usr/bin/env python3
"""
electrode - Persistent Electron automation sessions over Playwright

Usage:
    electrode                              Show session status
    electrode open -p <path>               Launch app and serve a session
    electrode status                       Show app identity
    electrode eval <script>                Run a script against the app
    electrode -e <script>                  Same as eval
    electrode screenshot <output>          Save a screenshot of the first window
    electrode close                        Close the app and end the session
    electrode run -p <path> <script>       Launch, run script once, close

Options:
    -p, --path PATH       Electron binary or project directory
    -a, --arg ARG         Argument passed to the app (repeatable)
    -t, --timeout MS      Launch timeout in milliseconds (default 30000)
    --port PORT           Control port (default 9847, $ELECTRODE_PORT)
    --cwd DIR             Working directory for the app
    -j, --json            Output raw JSON

Scripts are Python with `app` (main process) and `window` (Playwright Page):
    electrode eval "await window.click('button')"
    electrode eval "return await window.title()"
"""

import argparse
import json
import sys
from pathlib import Path

import anyio
from rich.console import Console
from rich.markup import escape

from electrode_client import ClientResponse, ControlClient, SessionError
from electrode_driver import DEFAULT_LAUNCH_TIMEOUT, LaunchError
from electrode_script import ScriptCompileError, ScriptExecutionError, run_inline_script
from electrode_server import ControlServer
from electrode_session import SessionStore, default_port, is_session_alive

console = Console()
err_console = Console(stderr=True)


def error(msg: str):
    """Print error and exit."""
    err_console.print(f"[red]error:[/red] {escape(msg)}", highlight=False)
    sys.exit(1)


def require(response: ClientResponse, what: str) -> ClientResponse:
    if not response.success:
        error(f"{what}: {response.error}")
    return response


# ============================================================================
# Commands
# ============================================================================

def cmd_open(args):
    """Launch the app and serve the session in the foreground."""
    store = SessionStore()
    existing = store.load()
    if existing is not None and is_session_alive(existing):
        err_console.print("[yellow]an Electron app is already running[/yellow]")
        err_console.print(f"  [dim]app:[/dim]     {existing.app_path}")
        err_console.print(f"  [dim]started:[/dim] {existing.started_at}")
        err_console.print(f"  [dim]port:[/dim]    {existing.port}")
        err_console.print("  use [bold]electrode close[/bold] to stop it first, or run commands against it")
        sys.exit(1)

    if not args.path:
        error("no app path\n  electrode open -p /path/to/electron/app")

    server = ControlServer(
        str(Path(args.path).resolve()),
        args=args.arg,
        timeout=args.timeout,
        port=args.port,
        cwd=args.cwd,
        store=store,
    )
    try:
        anyio.run(server.serve)
    except (LaunchError, OSError) as e:
        error(f"failed to start session: {e}")


def cmd_status(args, client: ControlClient):
    response = require(client.status(), "failed to get status")
    if args.json:
        console.print_json(json.dumps(response.data))
        return
    data = response.data
    console.print(f"[green]session active[/green] [bold cyan]{data.get('name', '?')}[/bold cyan] [dim]v{data.get('version', '?')}[/dim]")
    console.print(f"  [dim]target:[/dim] {data.get('targetPath')}")
    console.print(f"  [dim]path:[/dim]   {data.get('path')}")
    console.print(f"  [dim]locale:[/dim] {data.get('locale')}")


def cmd_overview(args):
    """Default command: one line about the current session."""
    session = SessionStore().load()
    if session is None:
        console.print("[dim]no session[/dim]")
        console.print("[dim]electrode open -p <path>[/dim]")
        return
    state = "[green]running[/green]" if is_session_alive(session) else "[red]dead[/red]"
    console.print(f"{state} {session.app_path} [dim]port {session.port}, since {session.started_at}[/dim]")


def print_result(args, response: ClientResponse):
    data = response.data if isinstance(response.data, dict) else {}
    if args.json:
        console.print_json(json.dumps(data))
        return
    result = data.get("result")
    if result is None:
        return
    if isinstance(result, str):
        console.print(result, markup=False, highlight=False)
    else:
        console.print_json(json.dumps(result))


def cmd_eval(args, client: ControlClient, script: str):
    response = require(client.eval_script(script), "script execution failed")
    print_result(args, response)


def cmd_screenshot(args, client: ControlClient, output: str):
    path = str(Path(output).resolve())
    require(client.screenshot(path), "failed to take screenshot")
    console.print(f"screenshot saved to [bold]{output}[/bold]")


def cmd_close(args, client: ControlClient):
    require(client.close(), "failed to close")
    console.print("[red]closed[/red] Electron application")


def cmd_run(args, script: str):
    """One-shot: launch, run the script, close. No session involved."""
    if not args.path:
        error("no app path\n  electrode run -p /path/to/electron/app <script>")

    async def go():
        return await run_inline_script(
            script,
            str(Path(args.path).resolve()),
            args=args.arg,
            timeout=args.timeout,
            cwd=args.cwd,
        )

    try:
        result = anyio.run(go)
    except (LaunchError, ScriptCompileError, ScriptExecutionError) as e:
        error(str(e))
    print_result(args, ClientResponse(success=True, data={"result": result}))
    if not args.json:
        err_console.print("[green]script executed successfully[/green]")


# ============================================================================
# Entry point
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="Persistent Electron automation sessions over Playwright",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-p", "--path", help="Electron binary or project directory")
    parser.add_argument("-a", "--arg", action="append", default=[], help="Argument for the app (repeatable)")
    parser.add_argument("-t", "--timeout", type=float, default=DEFAULT_LAUNCH_TIMEOUT, help="Launch timeout (ms)")
    parser.add_argument("--port", type=int, default=None, help=f"Control port (default {default_port()})")
    parser.add_argument("--cwd", default=None, help="Working directory for the app")
    parser.add_argument("-e", "--eval", dest="eval_script", help="Run a script against the running app")
    parser.add_argument("-j", "--json", action="store_true", help="Output raw JSON")
    parser.add_argument("command", nargs="?", help="Command")
    parser.add_argument("args", nargs="*", help="Command arguments")

    args = parser.parse_args()

    if args.eval_script is not None and not args.command:
        args.command = "eval"
        args.args = [args.eval_script]

    if not args.command:
        cmd_overview(args)
        return

    cmd = args.command.lower()

    if cmd == "open":
        cmd_open(args)
        return

    if cmd == "run":
        if not args.args:
            error("run <script>")
        cmd_run(args, " ".join(args.args))
        return

    client = ControlClient()
    try:
        if cmd == "status":
            cmd_status(args, client)
        elif cmd == "eval":
            if not args.args:
                error("eval <script>")
            cmd_eval(args, client, " ".join(args.args))
        elif cmd == "screenshot":
            if not args.args:
                error("screenshot <output>")
            cmd_screenshot(args, client, args.args[0])
        elif cmd == "close":
            cmd_close(args, client)
        else:
            error(f"unknown command: {cmd}")
    except SessionError as e:
        error(str(e))


if __name__ == "__main__":
    main()
