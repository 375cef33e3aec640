"""
Electrode Script: run Python snippets against a live application.

A script is the body of an async function with exactly two names bound:

    app      ElectronApp (main process, see electrode_driver)
    window   playwright.async_api.Page (first window)

Top-level await works, `return` hands a value back, and a trailing bare
expression is returned as if it had been written with `return`:

    await window.click("button")
    return await window.title()

There is no sandbox. Scripts run with the full rights of the server process;
the trust boundary is the local user who started the session.
"""

from __future__ import annotations

import ast
import builtins
from typing import Any, Awaitable, Callable

import anyio
import anyio.abc

from electrode_driver import (
    DEFAULT_LAUNCH_TIMEOUT,
    AutomationDriver,
    ElectronDriver,
    wait_for_window,
)
from electrode_session import ElectrodeError


SCRIPT_PARAMS = ("app", "window")
ENTRY_NAME = "__electrode_script__"
SCRIPT_FILENAME = "<script>"

ScriptFunction = Callable[[Any, Any], Awaitable[Any]]


class ScriptCompileError(ElectrodeError):
    """Script text is not valid Python."""


class ScriptExecutionError(ElectrodeError):
    """Script raised while running."""

    def __init__(self, cause: BaseException):
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause


def compile_script(script: str) -> ScriptFunction:
    """Turn script text into `async def (app, window)`."""
    try:
        body = ast.parse(script, filename=SCRIPT_FILENAME).body
        wrapper = ast.parse(f"async def {ENTRY_NAME}({', '.join(SCRIPT_PARAMS)}):\n    pass\n")
    except (SyntaxError, ValueError) as e:
        raise ScriptCompileError(f"{type(e).__name__}: {e}") from e

    if body and isinstance(body[-1], ast.Expr):
        last = body[-1]
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)

    func = wrapper.body[0]
    func.body = body or [ast.Pass()]
    ast.fix_missing_locations(wrapper)

    try:
        code = compile(wrapper, SCRIPT_FILENAME, "exec")
    except (SyntaxError, ValueError) as e:
        raise ScriptCompileError(f"{type(e).__name__}: {e}") from e

    namespace: dict[str, Any] = {"__builtins__": builtins}
    exec(code, namespace)
    return namespace[ENTRY_NAME]


def to_jsonable(value: Any) -> Any:
    """Coerce a script result into something json.dumps accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)


async def execute_script(script: str, app: Any, window: Any) -> Any:
    """Compile and run script against app/window, returning a JSON-ready result."""
    fn = compile_script(script)
    try:
        result = await fn(app, window)
    except Exception as e:
        raise ScriptExecutionError(e) from e
    return to_jsonable(result)


async def run_inline_script(
    script: str,
    target_path: str,
    args: list[str] | None = None,
    timeout: float = DEFAULT_LAUNCH_TIMEOUT,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    driver_factory: Callable[[anyio.abc.TaskGroup], AutomationDriver] = ElectronDriver,
) -> Any:
    """Launch target_path, run script once, close the application."""
    compile_script(script)  # fail before launching anything

    result: Any = None
    failure: Exception | None = None
    async with anyio.create_task_group() as tg:
        try:
            app = await driver_factory(tg).launch(target_path, args=args, timeout=timeout, cwd=cwd, env=env)
            try:
                window = await wait_for_window(app, timeout=timeout)
                result = await execute_script(script, app, window)
            finally:
                with anyio.CancelScope(shield=True):
                    await app.close()
        except Exception as e:
            failure = e
        tg.cancel_scope.cancel()

    if failure is not None:
        raise failure
    return result
