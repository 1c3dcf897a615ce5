"""Restricted interpreter for model-written task programs.

Code is validated, then compiled as the body of ``async def`` so it can
``await`` the task functions and ``return`` a value directly. It runs
against an explicit namespace: a whitelist of builtins, a capturing
``print`` and async task functions that exchange plain JSON data.

Each run gets its own worker process (``sandbox.worker``). The program
executes there, and every task function call is sent back over the
worker's stdin/stdout as a JSON line and served here against the
TaskStore. The wall-clock deadline covers everything after the worker
reports that the program started; when it passes the worker is killed,
so neither CPU-bound loops nor long builtin calls can hold the server's
event loop.
"""

import ast
import asyncio
import builtins
import contextlib
import json
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from types import CodeType
from typing import Any

import structlog
from pydantic import BaseModel

from config import settings
from models.task_store import TaskStore
from models.tasks import Task
from sandbox.security import SANDBOX_FILENAME, parse_code, validate_code

logger = structlog.get_logger()

ENTRYPOINT = "_sandbox_main"
_TEMPLATE = f"async def {ENTRYPOINT}():\n    pass\n"

WORKER_MODULE = "sandbox.worker"
_BACKEND_ROOT = Path(__file__).resolve().parent.parent
# Interpreter start-up and imports are not charged to the program's deadline.
_STARTUP_TIMEOUT_SECONDS = 30.0
# Task lists can make long JSON lines; asyncio's default is 64 KiB.
_STREAM_LIMIT = 16 * 1024 * 1024

SAFE_BUILTINS: tuple[str, ...] = (
    "abs",
    "all",
    "any",
    "bool",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "int",
    "isinstance",
    "iter",
    "len",
    "list",
    "map",
    "max",
    "min",
    "next",
    "ord",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "ArithmeticError",
    "IndexError",
    "KeyError",
    "LookupError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


class SandboxError(Exception):
    """Base class for sandbox failures."""


class SandboxValidationError(SandboxError):
    """The code was empty, did not parse or used a forbidden construct."""


class SandboxTimeoutError(SandboxError):
    """The code ran past its deadline."""


class SandboxRuntimeError(SandboxError):
    """The code raised while running."""


@dataclass
class SandboxResult:
    result: str
    outputs: list[str] = field(default_factory=list)


def to_json_data(value: Any) -> Any:
    """Convert store results (models, and lists/dicts of them) to plain data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_json_data(item) for item in value]
    if isinstance(value, dict):
        return {key: to_json_data(item) for key, item in value.items()}
    return value


def format_value(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, default=str)
    return str(value)


def build_task_functions(store: TaskStore) -> dict[str, Callable[..., Awaitable[Any]]]:
    """Async task operations exposed to sandbox code by name."""

    async def get_backlog_tasks() -> list[dict[str, Any]]:
        return to_json_data(await store.get_backlog_tasks())

    async def get_today() -> dict[str, Any]:
        return to_json_data(await store.get_today())

    async def get_days_by_date_range(start_date: str, end_date: str) -> list[dict[str, Any]]:
        return to_json_data(await store.get_days_by_date_range(start_date, end_date))

    async def get_incomplete_tasks(start_date: str, end_date: str) -> dict[str, Any]:
        return to_json_data(await store.get_incomplete_tasks(start_date, end_date))

    async def create_task(
        date: str,
        title: str,
        description: str | None = None,
        start_time: str | None = None,
        duration_minutes: int | None = None,
        subtasks: list[str] | None = None,
        urgency: str | None = None,
        importance: str | None = None,
    ) -> dict[str, Any]:
        task = await store.create_task(
            date,
            title,
            description=description,
            start_time=start_time,
            duration_minutes=duration_minutes,
            subtasks=subtasks,
            urgency=urgency,
            importance=importance,
        )
        return to_json_data(task)

    async def add_task(
        date: str, task: dict[str, Any], insert_index: int | None = None
    ) -> dict[str, Any]:
        return to_json_data(await store.add_task(date, Task.model_validate(task), insert_index))

    async def update_task(date: str, task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return to_json_data(await store.update_task(date, task_id, updates))

    async def delete_task(date: str, task_id: str) -> None:
        await store.delete_task(date, task_id)

    async def mark_task_completed(task_id: str) -> dict[str, Any]:
        return to_json_data(await store.mark_task_completed(task_id))

    async def mark_tasks_completed(date_ids: dict[str, list[str]]) -> int:
        return await store.mark_tasks_completed(date_ids)

    async def mark_subtask_completed(task_id: str, subtask_id: str) -> dict[str, Any]:
        return to_json_data(await store.mark_subtask_completed(task_id, subtask_id))

    async def move_task(
        task_id: str,
        new_date: str,
        new_start_time: str | None = None,
        new_end_time: str | None = None,
    ) -> dict[str, Any]:
        return to_json_data(
            await store.move_task(task_id, new_date, new_start_time, new_end_time)
        )

    async def schedule_backlog_task(
        task_id: str,
        date: str,
        start_time: str | None = None,
        end_time: str | None = None,
    ) -> dict[str, Any]:
        return to_json_data(
            await store.schedule_backlog_task(task_id, date, start_time, end_time)
        )

    async def reorder_day_tasks(date: str, task_ids: list[str]) -> None:
        await store.reorder_day_tasks(date, task_ids)

    async def add_backlog_task(
        task: dict[str, Any], insert_index: int | None = None
    ) -> dict[str, Any]:
        return to_json_data(await store.add_backlog_task(Task.model_validate(task), insert_index))

    async def update_backlog_task(task_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return to_json_data(await store.update_backlog_task(task_id, updates))

    async def delete_backlog_task(task_id: str) -> None:
        await store.delete_backlog_task(task_id)

    async def reorder_backlog_tasks(task_ids: list[str]) -> None:
        await store.reorder_backlog_tasks(task_ids)

    async def check_with_user(message: str) -> bool:
        # No interactive channel yet; every confirmation is granted.
        logger.info("sandbox_user_check", message=message)
        return True

    functions = [
        get_backlog_tasks,
        get_today,
        get_days_by_date_range,
        get_incomplete_tasks,
        create_task,
        add_task,
        update_task,
        delete_task,
        mark_task_completed,
        mark_tasks_completed,
        mark_subtask_completed,
        move_task,
        schedule_backlog_task,
        reorder_day_tasks,
        add_backlog_task,
        update_backlog_task,
        delete_backlog_task,
        reorder_backlog_tasks,
        check_with_user,
    ]
    return {function.__name__: function for function in functions}


def compile_sandbox_code(code: str) -> CodeType:
    """Validate ``code`` and compile it as the body of the sandbox coroutine.

    Raises:
        SandboxValidationError: If the code is empty or rejected.
    """
    is_valid, error = validate_code(code)
    if not is_valid:
        raise SandboxValidationError(error)

    body = parse_code(code).body
    module = ast.parse(_TEMPLATE, SANDBOX_FILENAME)
    module.body[0].body = body or [ast.Pass()]
    ast.fix_missing_locations(module)
    try:
        return compile(module, SANDBOX_FILENAME, "exec")
    except SyntaxError as e:
        raise SandboxValidationError(f"Syntax error on line {e.lineno}: {e.msg}") from e




def build_namespace(
    functions: dict[str, Callable[..., Awaitable[Any]]], outputs: list[str]
) -> dict[str, Any]:
    """Globals for sandbox code: safe builtins, captured print, dates, task functions."""

    def captured_print(*args: Any, **kwargs: Any) -> None:
        outputs.append(" ".join(format_value(arg) for arg in args))

    safe_builtins = {name: getattr(builtins, name) for name in SAFE_BUILTINS}
    safe_builtins["print"] = captured_print
    return {
        "__builtins__": safe_builtins,
        "date": date,
        "datetime": datetime,
        "timedelta": timedelta,
        **functions,
    }


class CodeSandbox:
    """Runs validated Python against the task functions with a deadline.

    Usage:
        >>> sandbox = CodeSandbox(store)
        >>> result = await sandbox.run("tasks = await get_backlog_tasks()\\nreturn len(tasks)")
        >>> result.result
        '3'
    """

    def __init__(self, store: TaskStore, timeout_seconds: float | None = None) -> None:
        self.store = store
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None
            else settings.code_execution_timeout_seconds
        )

    async def run(self, code: str) -> SandboxResult:
        """Execute ``code`` in a worker process and return its result and printed lines.

        Raises:
            SandboxValidationError: If the code is rejected before running.
            SandboxTimeoutError: If the deadline passes.
            SandboxRuntimeError: If the code raises or the worker dies.
        """
        compile_sandbox_code(code)
        functions = build_task_functions(self.store)

        try:
            process = await asyncio.create_subprocess_exec(
                sys.executable,
                "-m",
                WORKER_MODULE,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=str(_BACKEND_ROOT),
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise SandboxRuntimeError(f"Could not start sandbox worker: {e}") from e

        try:
            await self._send(process, {"code": code, "functions": sorted(functions)})
            try:
                started = await asyncio.wait_for(
                    self._receive(process), timeout=_STARTUP_TIMEOUT_SECONDS
                )
            except TimeoutError as e:
                raise SandboxRuntimeError("Sandbox worker did not start") from e
            if started.get("type") != "started":
                raise SandboxRuntimeError(started.get("error") or "Sandbox worker did not start")

            start_time = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    self._serve(process, functions), timeout=self.timeout_seconds
                )
            except TimeoutError as e:
                logger.warning("sandbox_timeout", timeout_seconds=self.timeout_seconds)
                raise SandboxTimeoutError(
                    f"Execution timed out after {self.timeout_seconds:g} seconds"
                ) from e
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            await process.wait()

        logger.info(
            "sandbox_run_complete",
            duration_ms=int((time.monotonic() - start_time) * 1000),
            outputs=len(result.outputs),
        )
        return result

    async def _serve(
        self,
        process: asyncio.subprocess.Process,
        functions: dict[str, Callable[..., Awaitable[Any]]],
    ) -> SandboxResult:
        """Answer the worker's task function calls until the program ends."""
        while True:
            message = await self._receive(process)
            kind = message.get("type")
            if kind == "call":
                await self._send(process, await self._dispatch(functions, message))
            elif kind == "done":
                return SandboxResult(result=message["result"], outputs=message.get("outputs", []))
            elif kind == "failed":
                logger.warning("sandbox_runtime_error", error=message.get("error"))
                raise SandboxRuntimeError(message.get("error") or "Sandbox program failed")
            else:
                raise SandboxRuntimeError(f"Unexpected sandbox worker message: {kind!r}")

    async def _dispatch(
        self,
        functions: dict[str, Callable[..., Awaitable[Any]]],
        message: dict[str, Any],
    ) -> dict[str, Any]:
        call_id = message.get("id")
        name = message.get("name")
        function = functions.get(name) if isinstance(name, str) else None
        if function is None:
            return {"id": call_id, "error": f"Unknown task function: {name}"}

        try:
            value = await function(*message.get("args", []), **message.get("kwargs", {}))
        except Exception as e:
            # Handed back to the program, which may catch it.
            logger.info("sandbox_task_function_error", function=name, error=str(e))
            return {"id": call_id, "error": f"{type(e).__name__}: {e}"}
        return {"id": call_id, "value": value}

    @staticmethod
    async def _send(process: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
        assert process.stdin is not None
        try:
            process.stdin.write(json.dumps(message, default=str).encode() + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SandboxRuntimeError("Sandbox worker exited unexpectedly") from e

    @staticmethod
    async def _receive(process: asyncio.subprocess.Process) -> dict[str, Any]:
        assert process.stdout is not None
        line = await process.stdout.readline()
        if not line:
            returncode = await process.wait()
            raise SandboxRuntimeError(f"Sandbox worker exited unexpectedly (code {returncode})")
        try:
            return json.loads(line)
        except json.JSONDecodeError as e:
            raise SandboxRuntimeError("Sandbox worker sent malformed output") from e
