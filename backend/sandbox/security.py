"""Static validation for model-written sandbox code.

Generated Python is checked on its AST before it is compiled. The checks
close the usual escape hatches from a restricted namespace: imports,
dunder/private attribute walks, frame and code objects, dynamic evaluation
and catching the interpreter's own control-flow exceptions.
"""

import ast

SANDBOX_FILENAME = "<sandbox>"

# Builtins and names that must never be referenced from sandbox code.
BLOCKED_NAMES: frozenset[str] = frozenset(
    {
        "eval",
        "exec",
        "open",
        "compile",
        "getattr",
        "setattr",
        "delattr",
        "hasattr",
        "globals",
        "locals",
        "vars",
        "dir",
        "input",
        "breakpoint",
        "help",
        "exit",
        "quit",
        "memoryview",
        "type",
        "object",
        "super",
        "classmethod",
        "staticmethod",
        "property",
        "BaseException",
        "SystemExit",
        "KeyboardInterrupt",
        "GeneratorExit",
    }
)

# Public attributes that still reach interpreter internals.
BLOCKED_ATTRIBUTES: frozenset[str] = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "f_back",
        "f_builtins",
        "f_globals",
        "f_locals",
        "f_code",
        "tb_frame",
        "tb_next",
    }
)


def parse_code(code: str) -> ast.Module:
    """Parse sandbox code, allowing top-level ``await``.

    Raises:
        SyntaxError: If the code does not parse.
    """
    return compile(
        code,
        SANDBOX_FILENAME,
        "exec",
        flags=ast.PyCF_ONLY_AST | ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
    )


def _check_node(node: ast.AST) -> str:
    """Return an error message for a forbidden node, or "" when it is allowed."""
    if isinstance(node, (ast.Import, ast.ImportFrom)):
        return "Import statements are not allowed"
    if isinstance(node, (ast.Global, ast.Nonlocal)):
        return "global and nonlocal statements are not allowed"
    if isinstance(node, ast.ClassDef):
        return "Class definitions are not allowed"
    if isinstance(node, ast.ExceptHandler) and node.type is None:
        return "Bare except clauses are not allowed"
    if isinstance(node, ast.Attribute):
        if node.attr.startswith("_"):
            return f"Access to private attribute blocked: {node.attr}"
        if node.attr in BLOCKED_ATTRIBUTES:
            return f"Access to attribute blocked: {node.attr}"
    if isinstance(node, ast.Name):
        if node.id.startswith("_"):
            return f"Names starting with '_' are not allowed: {node.id}"
        if node.id in BLOCKED_NAMES:
            return f"Use of {node.id} is not allowed"
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and node.name.startswith("_"):
        return f"Names starting with '_' are not allowed: {node.name}"
    if isinstance(node, ast.arg) and node.arg.startswith("_"):
        return f"Names starting with '_' are not allowed: {node.arg}"
    return ""


def validate_code(code: str) -> tuple[bool, str]:
    """Validate sandbox code before compilation.

    Args:
        code: Python source written by the model.

    Returns:
        A tuple of (is_valid, error_message).
        If valid, error_message is an empty string.

    Examples:
        >>> validate_code("tasks = await get_backlog_tasks()\\nreturn len(tasks)")
        (True, '')
        >>> validate_code("import os")
        (False, 'Import statements are not allowed')
        >>> validate_code("x = ().__class__")
        (False, 'Access to private attribute blocked: __class__')
    """
    if not code or not code.strip():
        return False, "No code provided"

    if "\x00" in code:
        return False, "Code contains null byte"

    try:
        tree = parse_code(code)
    except SyntaxError as e:
        return False, f"Syntax error on line {e.lineno}: {e.msg}"

    for node in ast.walk(tree):
        error = _check_node(node)
        if error:
            return False, error

    return True, ""
