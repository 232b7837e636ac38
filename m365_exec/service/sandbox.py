"""
Sandbox primitives for script execution.
Module: m365_exec/service/sandbox.py

Scripts are async function bodies. They are wrapped in a coroutine function,
checked by an AST guard, and evaluated against a fresh globals dict whose
builtins are an explicit allow-list. A thread-local trace hook enforces the
wall-clock budget on script frames.
"""

import ast
import asyncio
import builtins
import copy
import json
import logging
import math
import sys
import textwrap
import time
import traceback
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .capabilities import CAPABILITY_SURFACE

SCRIPT_FILENAME = "<m365-script>"
WRAPPER_NAME = "__m365_script__"

# Lines added in front of the script body by wrap_script().
LINE_OFFSET = 1

sandbox_logger = logging.getLogger("m365_exec.sandbox")

ALLOWED_BUILTINS = (
    "abs",
    "all",
    "any",
    "bool",
    "callable",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "hasattr",
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
    "pow",
    "range",
    "repr",
    "reversed",
    "round",
    "set",
    "slice",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    "Exception",
    "ArithmeticError",
    "AttributeError",
    "IndexError",
    "KeyError",
    "LookupError",
    "RuntimeError",
    "StopIteration",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)

# Bound to None in script globals so any use fails immediately.
BLOCKED_NAMES = (
    "os",
    "sys",
    "subprocess",
    "importlib",
    "open",
    "eval",
    "exec",
    "compile",
    "input",
    "breakpoint",
    "globals",
    "locals",
    "vars",
    "getattr",
    "setattr",
    "delattr",
    "asyncio",
    "threading",
    "time",
    "sleep",
)

# Attributes that reach frames, code objects, event loops or format-string lookups.
BLOCKED_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "cr_await",
        "ag_frame",
        "ag_code",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
        "get_loop",
        "loop",
    }
)


class ScriptBudgetExceeded(BaseException):
    """Raised inside a script frame once its deadline has passed."""


def wrap_script(code: str) -> str:
    """Place a script body inside the async wrapper function."""
    body = textwrap.dedent(code).rstrip()
    if not body.strip():
        body = "pass"
    return f"async def {WRAPPER_NAME}():\n{textwrap.indent(body, '    ')}\n"


class ScriptGuard(ast.NodeVisitor):
    """Collects constructs scripts are not allowed to use."""

    def __init__(self) -> None:
        self.violations: List[str] = []

    def _reject(self, node: ast.AST, message: str) -> None:
        line = max(getattr(node, "lineno", LINE_OFFSET + 1) - LINE_OFFSET, 1)
        self.violations.append(f"line {line}: {message}")

    def visit_Import(self, node: ast.Import) -> None:
        self._reject(node, "import statements are not allowed")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        self._reject(node, "import statements are not allowed")

    def visit_Global(self, node: ast.Global) -> None:
        self._reject(node, "global declarations are not allowed")

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self._reject(node, "nonlocal declarations are not allowed")

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._reject(node, "class definitions are not allowed")

    def visit_Yield(self, node: ast.Yield) -> None:
        self._reject(node, "yield is not allowed")

    def visit_YieldFrom(self, node: ast.YieldFrom) -> None:
        self._reject(node, "yield is not allowed")

    def visit_Try(self, node: ast.Try) -> None:
        # A finally block would run untraced once the budget has fired.
        if node.finalbody:
            self._reject(node, "'finally' blocks are not allowed")
        self.generic_visit(node)

    visit_TryStar = visit_Try

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            self._reject(node, "bare 'except:' is not allowed, catch Exception instead")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_"):
            self._reject(node, f"access to private attribute '{node.attr}' is not allowed")
        elif node.attr in BLOCKED_ATTRIBUTES:
            self._reject(node, f"access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            self._reject(node, f"use of name '{node.id}' is not allowed")


def check_script(tree: ast.AST) -> List[str]:
    """Return guard violations for a parsed, wrapped script."""
    guard = ScriptGuard()
    guard.visit(tree)
    return guard.violations


class SandboxNamespace:
    """Read-only attribute container exposed to scripts."""

    __slots__ = ("_name", "_members")

    def __init__(self, name: str, members: Mapping[str, Any]) -> None:
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_members", dict(members))

    def __getattr__(self, item: str) -> Any:
        try:
            return self._members[item]
        except KeyError:
            raise AttributeError(f"'{self._name}' has no attribute '{item}'") from None

    def __setattr__(self, key: str, value: Any) -> None:
        raise AttributeError(f"'{self._name}' is read-only")

    def __delattr__(self, item: str) -> None:
        raise AttributeError(f"'{self._name}' is read-only")

    def __dir__(self) -> Iterable[str]:
        return sorted(self._members)

    def __repr__(self) -> str:
        return f"<{self._name}: {', '.join(sorted(self._members))}>"


def _bridge(method: Callable[..., Any], host_loop: asyncio.AbstractEventLoop) -> Callable[..., Any]:
    # The script runs on its own loop; capability calls run on the host loop.
    async def call(*args: Any, **kwargs: Any) -> Any:
        future = asyncio.run_coroutine_threadsafe(method(*args, **kwargs), host_loop)
        return await asyncio.wrap_future(future)

    call.__name__ = getattr(method, "__name__", "call")
    return call


def build_capability_proxy(
    capabilities: Any, host_loop: asyncio.AbstractEventLoop
) -> SandboxNamespace:
    """
    Build the ``m365`` object from the closed capability surface.

    Args:
        capabilities: Facade instance (``M365Capabilities`` or a stand-in)
        host_loop: Event loop the capability coroutines must run on

    Returns:
        Read-only namespace of areas, each a namespace of bridged operations
    """
    areas: Dict[str, SandboxNamespace] = {}
    for area_name, operations in CAPABILITY_SURFACE.items():
        area = getattr(capabilities, area_name, None)
        if area is None:
            continue
        members = {}
        for operation in operations:
            method = getattr(area, operation, None)
            if callable(method):
                members[operation] = _bridge(method, host_loop)
        areas[area_name] = SandboxNamespace(f"m365.{area_name}", members)
    return SandboxNamespace("m365", areas)


def _join(args: Iterable[Any], sep: str = " ") -> str:
    return sep.join(str(arg) for arg in args)


async def _gather(*aws: Any) -> List[Any]:
    # Returns plain results only; scripts never see the Future or its loop.
    return list(await asyncio.gather(*aws))


def _sandbox_print(*args: Any, sep: str = " ", **_: Any) -> None:
    sandbox_logger.info(_join(args, sep))


def _make_log_namespace() -> SandboxNamespace:
    return SandboxNamespace(
        "log",
        {
            "debug": lambda *args: sandbox_logger.debug(_join(args)),
            "info": lambda *args: sandbox_logger.info(_join(args)),
            "warning": lambda *args: sandbox_logger.warning(_join(args)),
            "error": lambda *args: sandbox_logger.error(_join(args)),
        },
    )


def build_restricted_globals(
    capabilities: Any,
    params: Optional[Mapping[str, Any]],
    host_loop: asyncio.AbstractEventLoop,
) -> Dict[str, Any]:
    """
    Create a fresh evaluation context for one invocation.

    Args:
        capabilities: Capability facade
        params: Caller parameters, deep-copied and exposed read-only
        host_loop: Event loop capability calls are dispatched to

    Returns:
        Globals dict for ``exec`` of the wrapped script
    """
    safe_builtins = {name: getattr(builtins, name) for name in ALLOWED_BUILTINS}
    safe_builtins["print"] = _sandbox_print

    script_globals: Dict[str, Any] = {
        "__builtins__": safe_builtins,
        "__name__": "m365_script",
        "m365": build_capability_proxy(capabilities, host_loop),
        "params": MappingProxyType(copy.deepcopy(dict(params or {}))),
        "log": _make_log_namespace(),
        "json": SandboxNamespace("json", {"dumps": json.dumps, "loads": json.loads}),
        "math": math,
        "datetime": datetime,
        "date": date,
        "timedelta": timedelta,
        "timezone": timezone,
        "Counter": Counter,
        "defaultdict": defaultdict,
        "gather": _gather,
    }
    for name in BLOCKED_NAMES:
        script_globals[name] = None
    return script_globals


class ScriptBudget:
    """
    Wall-clock budget enforced through a thread-local trace hook.

    Only frames compiled from the script filename are traced, so library and
    event-loop code runs untraced. The hook is removed when the script ends.
    """

    def __init__(self, deadline: float, filename: str = SCRIPT_FILENAME) -> None:
        self.deadline = deadline
        self.filename = filename

    def _check(self) -> None:
        if time.monotonic() >= self.deadline:
            raise ScriptBudgetExceeded("script exceeded its time budget")

    def _trace_call(self, frame: Any, event: str, arg: Any) -> Optional[Callable[..., Any]]:
        if frame.f_code.co_filename != self.filename:
            return None
        self._check()
        return self._trace_line

    def _trace_line(self, frame: Any, event: str, arg: Any) -> Optional[Callable[..., Any]]:
        self._check()
        return self._trace_line

    async def run(self, script_fn: Callable[[], Any]) -> Any:
        """Await the script coroutine with the trace hook installed."""
        sys.settrace(self._trace_call)
        try:
            return await script_fn()
        finally:
            sys.settrace(None)


def format_script_trace(exc: BaseException, code: str) -> str:
    """Render the script frames of an exception's traceback."""
    source_lines = textwrap.dedent(code).splitlines()
    lines = []
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename != SCRIPT_FILENAME or frame.lineno is None:
            continue
        lineno = frame.lineno - LINE_OFFSET
        lines.append(f"  line {lineno}")
        if 0 < lineno <= len(source_lines):
            lines.append(f"    {source_lines[lineno - 1].strip()}")
    lines.append(f"{type(exc).__name__}: {exc}")
    return "\n".join(lines)
