"""Child-process side of the CodeSandbox.

Started as ``python -m sandbox.worker`` for a single program. Speaks JSON
lines with the parent: it reads ``{"code", "functions"}`` from stdin, replies
``started``, then sends a ``call`` for every task function the program awaits
and blocks on the matching answer. The run ends with ``done`` or ``failed``.
"""

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any, BinaryIO

from sandbox.interpreter import (
    ENTRYPOINT,
    SandboxValidationError,
    build_namespace,
    compile_sandbox_code,
    format_value,
)


class TaskFunctionError(Exception):
    """A task function failed in the parent process."""


class Channel:
    """Line-delimited JSON over a pair of binary streams."""

    def __init__(self, reader: BinaryIO, writer: BinaryIO) -> None:
        self._reader = reader
        self._writer = writer
        self._next_id = 0

    def send(self, message: dict[str, Any]) -> None:
        self._writer.write(json.dumps(message, default=str).encode() + b"\n")
        self._writer.flush()

    def receive(self) -> dict[str, Any]:
        line = self._reader.readline()
        if not line:
            raise EOFError("sandbox parent closed the channel")
        return json.loads(line)

    def call(self, name: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> Any:
        self._next_id += 1
        call_id = self._next_id
        self.send({"type": "call", "id": call_id, "name": name, "args": args, "kwargs": kwargs})
        reply = self.receive()
        if reply.get("id") != call_id:
            raise TaskFunctionError(f"{name}: reply out of order")
        if "error" in reply:
            raise TaskFunctionError(reply["error"])
        return reply.get("value")


def remote_function(channel: Channel, name: str) -> Callable[..., Awaitable[Any]]:
    async def call(*args: Any, **kwargs: Any) -> Any:
        return channel.call(name, args, kwargs)

    call.__name__ = name
    return call


def run_program(channel: Channel) -> int:
    request = channel.receive()
    outputs: list[str] = []
    try:
        compiled = compile_sandbox_code(request["code"])
    except SandboxValidationError as e:
        channel.send({"type": "failed", "error": str(e), "outputs": outputs})
        return 1

    functions = {name: remote_function(channel, name) for name in request.get("functions", [])}
    namespace = build_namespace(functions, outputs)
    exec(compiled, namespace)

    channel.send({"type": "started"})
    try:
        value = asyncio.run(namespace[ENTRYPOINT]())
    except Exception as e:
        channel.send({"type": "failed", "error": f"{type(e).__name__}: {e}", "outputs": outputs})
        return 1

    channel.send({"type": "done", "result": format_value(value), "outputs": outputs})
    return 0


def main() -> int:
    channel = Channel(sys.stdin.buffer, os.fdopen(os.dup(sys.stdout.fileno()), "wb"))
    # Everything else written to stdout (logging included) goes to stderr.
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    return run_program(channel)


if __name__ == "__main__":
    sys.exit(main())
