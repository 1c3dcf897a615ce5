"""Restricted execution of model-written Python.

This module provides the CodeSandbox that runs generated task programs
against the TaskStore, and the static validation applied beforehand.
"""

from sandbox.interpreter import (
    CodeSandbox,
    SandboxError,
    SandboxResult,
    SandboxRuntimeError,
    SandboxTimeoutError,
    SandboxValidationError,
)
from sandbox.security import validate_code

__all__ = [
    "CodeSandbox",
    "SandboxError",
    "SandboxResult",
    "SandboxRuntimeError",
    "SandboxTimeoutError",
    "SandboxValidationError",
    "validate_code",
]
