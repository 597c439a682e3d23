"""
Isolated execution of tenant scripts.

A script is the body of a Python function. It is validated with ``ast``
in the calling process, then compiled and run in a freshly spawned child
process with a restricted ``__builtins__`` table and the helper set from
``gateway.transformers.helpers``. The parent waits up to the timeout and
terminates the child when it expires, so a runaway script can never hold
the poller.

The result travels back as JSON after circular-reference and depth checks.
"""

import ast
import asyncio
import json
import logging
import multiprocessing
import textwrap
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.exceptions import ScriptExecutionError

logger = logging.getLogger(__name__)

MAX_RESULT_DEPTH = 50
DEFAULT_TIMEOUT_MS = 60000

# Error codes
SCRIPT_COMPILE_ERROR = "SCRIPT_COMPILE_ERROR"
SCRIPT_SECURITY_VIOLATION = "SCRIPT_SECURITY_VIOLATION"
SCRIPT_RUNTIME_ERROR = "SCRIPT_RUNTIME_ERROR"
SCRIPT_TIMEOUT = "SCRIPT_TIMEOUT"
SCRIPT_DEPTH_EXCEEDED = "SCRIPT_DEPTH_EXCEEDED"
SCRIPT_CIRCULAR_REFERENCE = "SCRIPT_CIRCULAR_REFERENCE"
SCRIPT_INVALID_OUTPUT = "SCRIPT_INVALID_OUTPUT"

FORBIDDEN_NAMES = {
    "eval", "exec", "compile", "open", "globals", "locals", "vars",
    "getattr", "setattr", "delattr", "input", "breakpoint", "memoryview",
    "type", "object", "super", "classmethod", "staticmethod", "property",
    "help", "exit", "quit",
}

# Attributes that expose frames, code objects or string formatting tricks
FORBIDDEN_ATTRIBUTES = {
    "format", "format_map", "mro",
    "gi_frame", "gi_code", "cr_frame", "cr_code", "ag_frame", "ag_code",
    "f_back", "f_globals", "f_locals", "f_builtins", "f_code",
    "tb_frame", "tb_next",
}

SAFE_BUILTINS = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "divmod": divmod,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "pow": pow,
    "range": range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "None": None,
    "True": True,
    "False": False,
    "Exception": Exception,
    "ValueError": ValueError,
    "TypeError": TypeError,
    "KeyError": KeyError,
}


class _ScriptValidator(ast.NodeVisitor):
    """Rejects constructs that could reach outside the sandbox."""

    def __init__(self) -> None:
        self.reason: Optional[str] = None

    def fail(self, node: ast.AST, msg: str):
        if self.reason is None:
            line = getattr(node, "lineno", None)
            self.reason = f"{msg} (line {line - 1})" if line else msg

    def visit_Import(self, node):
        self.fail(node, "import is not allowed")

    visit_ImportFrom = visit_Import

    def visit_Global(self, node):
        self.fail(node, "global/nonlocal is not allowed")

    visit_Nonlocal = visit_Global

    def visit_ClassDef(self, node):
        self.fail(node, "class definitions are not allowed")

    def visit_AsyncFunctionDef(self, node):
        self.fail(node, "async functions are not allowed")

    def visit_Name(self, node: ast.Name):
        if node.id.startswith("__") or node.id in FORBIDDEN_NAMES:
            self.fail(node, f"name '{node.id}' is not allowed")

    def visit_Attribute(self, node: ast.Attribute):
        if node.attr.startswith("_") or node.attr in FORBIDDEN_ATTRIBUTES:
            self.fail(node, f"attribute '{node.attr}' is not allowed")
            return
        self.generic_visit(node)

    def generic_visit(self, node: ast.AST):
        if self.reason is not None:
            return
        super().generic_visit(node)


def wrap_script(body: str, function_name: str, arg_names: Sequence[str]) -> str:
    """Wrap a function body into a module defining ``function_name``."""
    source = textwrap.dedent(body or "").strip("\n")
    if not source.strip():
        source = "pass"
    indented = textwrap.indent(source, "    ")
    return f"def {function_name}({', '.join(arg_names)}):\n{indented}\n    return None\n"


def validate_script(body: str, function_name: str, arg_names: Sequence[str]) -> str:
    """
    Parse and validate a script body.

    Returns the wrapped source. Raises ScriptExecutionError with
    SCRIPT_COMPILE_ERROR or SCRIPT_SECURITY_VIOLATION.
    """
    if not isinstance(body, str) or not body.strip():
        raise ScriptExecutionError("Script is empty", code=SCRIPT_COMPILE_ERROR)

    wrapped = wrap_script(body, function_name, arg_names)
    try:
        tree = ast.parse(wrapped, filename="<script>", mode="exec")
    except SyntaxError as e:
        line = (e.lineno or 1) - 1
        raise ScriptExecutionError(
            f"Script compilation failed: {e.msg} (line {line})",
            code=SCRIPT_COMPILE_ERROR,
            original_exception=e
        )

    validator = _ScriptValidator()
    # Skip the wrapper's own FunctionDef node, validate its body and args
    validator.visit(tree.body[0].args)
    for statement in tree.body[0].body:
        validator.visit(statement)
    if validator.reason:
        raise ScriptExecutionError(
            f"Script rejected: {validator.reason}",
            code=SCRIPT_SECURITY_VIOLATION
        )
    return wrapped


def check_result_structure(value: Any, max_depth: int = MAX_RESULT_DEPTH) -> None:
    """
    Reject circular references and containers nested deeper than max_depth.

    The top-level container counts as depth 1.
    """
    on_path = set()

    def walk(node: Any, depth: int):
        if not isinstance(node, (dict, list, tuple)):
            return
        if id(node) in on_path:
            raise ScriptExecutionError(
                "Script result contains a circular reference",
                code=SCRIPT_CIRCULAR_REFERENCE
            )
        if depth > max_depth:
            raise ScriptExecutionError(
                f"Script result exceeds maximum nesting depth of {max_depth}",
                code=SCRIPT_DEPTH_EXCEEDED
            )
        on_path.add(id(node))
        children = node.values() if isinstance(node, dict) else node
        for child in children:
            walk(child, depth + 1)
        on_path.discard(id(node))

    walk(value, 1)


def _json_default(value: Any):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _child_main(conn, wrapped: str, function_name: str, args: List[Any], allow_http: bool):
    """Entry point of the sandbox child process."""
    from gateway.transformers.helpers import build_helpers

    try:
        try:
            code = compile(wrapped, "<script>", "exec")
        except SyntaxError as e:
            conn.send(("error", SCRIPT_COMPILE_ERROR, f"Script compilation failed: {e.msg}"))
            return

        namespace: Dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS)}
        namespace.update(build_helpers(allow_http=allow_http))
        namespace["json"] = _SafeJson()
        exec(code, namespace)

        try:
            result = namespace[function_name](*args)
        except Exception as e:
            conn.send(("error", SCRIPT_RUNTIME_ERROR, f"Script execution failed: {type(e).__name__}: {e}"))
            return

        try:
            check_result_structure(result)
        except ScriptExecutionError as e:
            conn.send(("error", e.code, e.message))
            return

        try:
            encoded = json.dumps(result, default=_json_default)
        except (TypeError, ValueError) as e:
            conn.send(("error", SCRIPT_INVALID_OUTPUT, f"Script result is not serializable: {e}"))
            return

        conn.send(("ok", encoded))
    finally:
        conn.close()


class _SafeJson:
    """``json`` stand-in exposing only dumps/loads to scripts."""

    def dumps(self, value, indent=None, sort_keys=False):
        return json.dumps(value, indent=indent, sort_keys=sort_keys, default=_json_default)

    def loads(self, text):
        return json.loads(text)


def run_script(
    body: str,
    function_name: str,
    arg_names: Sequence[str],
    args: Sequence[Any],
    timeout_ms: Optional[int] = None,
    allow_http: bool = True
) -> Any:
    """
    Execute a script body in an isolated child process and return its result.

    Blocking; async callers should go through ``run_script_async``.

    Raises:
        ScriptExecutionError: With one of the SCRIPT_* codes
    """
    wrapped = validate_script(body, function_name, arg_names)
    timeout_s = (timeout_ms or DEFAULT_TIMEOUT_MS) / 1000.0

    ctx = multiprocessing.get_context("spawn")
    parent_conn, child_conn = ctx.Pipe(duplex=False)
    process = ctx.Process(
        target=_child_main,
        args=(child_conn, wrapped, function_name, list(args), allow_http),
        daemon=True
    )
    process.start()
    child_conn.close()

    try:
        if not parent_conn.poll(timeout_s):
            logger.warning(f"Script {function_name} timed out after {timeout_s:.1f}s, terminating")
            raise ScriptExecutionError(
                f"Script execution timed out after {int(timeout_s * 1000)} ms",
                code=SCRIPT_TIMEOUT
            )
        try:
            message = parent_conn.recv()
        except EOFError:
            raise ScriptExecutionError(
                "Script process exited without a result",
                code=SCRIPT_RUNTIME_ERROR
            )
    finally:
        parent_conn.close()
        if process.is_alive():
            process.terminate()
        process.join(timeout=2)
        if process.is_alive():
            process.kill()
            process.join(timeout=2)

    if message[0] == "error":
        _, code, text = message
        raise ScriptExecutionError(text, code=code)
    return json.loads(message[1])


async def run_script_async(
    body: str,
    function_name: str,
    arg_names: Sequence[str],
    args: Sequence[Any],
    timeout_ms: Optional[int] = None,
    allow_http: bool = True
) -> Any:
    """Run ``run_script`` in the default executor so the event loop stays free."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        lambda: run_script(body, function_name, arg_names, args, timeout_ms, allow_http)
    )
