"""
Sandboxed execution engine for M365 scripts.
Module: m365_exec/service/executor.py
"""

import ast
import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional

import anyio
from anyio import fail_after

from .config import settings
from .models import ExecutionLog, ExecutionState
from .sandbox import (
    SCRIPT_FILENAME,
    WRAPPER_NAME,
    LINE_OFFSET,
    ScriptBudget,
    ScriptBudgetExceeded,
    build_restricted_globals,
    check_script,
    format_script_trace,
    wrap_script,
)

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Base exception for execution errors."""

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        trace: Optional[str] = None,
        execution_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type or type(self).__name__
        self.trace = trace
        self.execution_id = execution_id


class ExecutionTimeoutError(ExecutionError):
    """Raised when execution exceeds timeout."""

    pass


class SandboxViolationError(ExecutionError):
    """Raised when a script uses a construct the sandbox forbids."""

    def __init__(self, violations: List[str], **kwargs: Any) -> None:
        super().__init__(
            "Script rejected: " + "; ".join(violations),
            error_type="SandboxViolation",
            **kwargs,
        )
        self.violations = violations


class SandboxedExecutor:
    """
    Runs script bodies against the capability facade.

    Responsibilities:
    - Wrapping and compile-time checks
    - Fresh, allow-listed evaluation context per invocation
    - Deadline enforcement (script budget plus outer race)
    - Execution state tracking and logging
    """

    def __init__(self, max_execution_logs: Optional[int] = None) -> None:
        """
        Initialize the executor.

        Args:
            max_execution_logs: Number of executions whose logs are retained
        """
        self.max_execution_logs = max_execution_logs or settings.max_execution_logs
        self.execution_logs: Dict[str, List[ExecutionLog]] = {}
        self.execution_states: Dict[str, ExecutionState] = {}

    async def execute(
        self,
        code: str,
        capabilities: Any,
        timeout_ms: Optional[int] = None,
        params: Optional[Mapping[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> Any:
        """
        Execute a script body and return its result.

        Args:
            code: Async function body; it may ``await`` capability calls
            capabilities: Facade bound as ``m365`` (read-only proxy)
            timeout_ms: Deadline in milliseconds, clamped to the configured max
            params: Parameters bound read-only as ``params``
            execution_id: Identifier used for log retrieval (generated if omitted)

        Returns:
            The value the script returned

        Raises:
            ExecutionTimeoutError: If the deadline elapses first
            SandboxViolationError: If the script uses forbidden constructs
            ExecutionError: If the script fails to compile or raises
        """
        execution_id = execution_id or str(uuid.uuid4())
        timeout_ms = settings.clamp_timeout(timeout_ms)
        start_time = time.time()

        self._start(execution_id)
        await self._transition(execution_id, ExecutionState.CREATED, f"Timeout {timeout_ms}ms")

        await self._transition(execution_id, ExecutionState.COMPILING)
        try:
            code_obj = self._compile(code, execution_id)
        except ExecutionError as e:
            await self._transition(execution_id, ExecutionState.FAILED, str(e), level="ERROR")
            raise

        host_loop = asyncio.get_running_loop()
        script_globals = build_restricted_globals(capabilities, params, host_loop)
        exec(code_obj, script_globals)
        script_fn = script_globals[WRAPPER_NAME]

        await self._transition(execution_id, ExecutionState.RUNNING)
        deadline = time.monotonic() + timeout_ms / 1000

        try:
            with fail_after(timeout_ms / 1000):
                result = await anyio.to_thread.run_sync(
                    self._run_worker,
                    script_fn,
                    deadline,
                    code,
                    execution_id,
                    abandon_on_cancel=True,
                )
        except TimeoutError:
            # Capability calls already issued keep running; their results are dropped.
            error = ExecutionTimeoutError(
                f"Execution timeout after {timeout_ms}ms",
                error_type="Timeout",
                execution_id=execution_id,
            )
            await self._transition(
                execution_id, ExecutionState.TIMED_OUT, str(error), level="ERROR"
            )
            raise error
        except ExecutionTimeoutError as e:
            await self._transition(execution_id, ExecutionState.TIMED_OUT, str(e), level="ERROR")
            raise
        except ExecutionError as e:
            await self._transition(execution_id, ExecutionState.FAILED, str(e), level="ERROR")
            raise

        execution_time_ms = (time.time() - start_time) * 1000
        await self._transition(
            execution_id,
            ExecutionState.COMPLETED,
            f"Execution completed in {execution_time_ms:.2f}ms",
        )
        return result

    def _compile(self, code: str, execution_id: str) -> Any:
        wrapped = wrap_script(code)
        try:
            tree = ast.parse(wrapped, filename=SCRIPT_FILENAME)
        except SyntaxError as e:
            line = (e.lineno or LINE_OFFSET + 1) - LINE_OFFSET
            raise ExecutionError(
                f"Syntax error at line {line}: {e.msg}",
                error_type="SyntaxError",
                execution_id=execution_id,
            ) from e

        violations = check_script(tree)
        if violations:
            raise SandboxViolationError(violations, execution_id=execution_id)

        try:
            return compile(tree, SCRIPT_FILENAME, "exec")
        except SyntaxError as e:
            raise ExecutionError(
                f"Syntax error: {e.msg}", error_type="SyntaxError", execution_id=execution_id
            ) from e

    @staticmethod
    def _run_worker(
        script_fn: Callable[[], Any], deadline: float, code: str, execution_id: str
    ) -> Any:
        """Run the script on this worker thread's own event loop."""
        budget = ScriptBudget(deadline)
        try:
            return asyncio.run(budget.run(script_fn))
        except ScriptBudgetExceeded as e:
            raise ExecutionTimeoutError(
                "Execution timeout: script exceeded its time budget",
                error_type="Timeout",
                execution_id=execution_id,
            ) from e
        except Exception as e:
            raise ExecutionError(
                str(e) or type(e).__name__,
                error_type=type(e).__name__,
                trace=format_script_trace(e, code),
                execution_id=execution_id,
            ) from e

    def _start(self, execution_id: str) -> None:
        while len(self.execution_logs) >= self.max_execution_logs:
            oldest = next(iter(self.execution_logs))
            self.execution_logs.pop(oldest, None)
            self.execution_states.pop(oldest, None)
        self.execution_logs[execution_id] = []

    async def _transition(
        self,
        execution_id: str,
        state: ExecutionState,
        detail: Optional[str] = None,
        level: str = "INFO",
    ) -> None:
        previous = self.execution_states.get(execution_id)
        if previous is not None and previous.is_terminal:
            raise RuntimeError(f"Execution {execution_id} already finished as {previous.value}")
        self.execution_states[execution_id] = state
        message = f"State: {state.value}"
        if detail:
            message = f"{message} ({detail})"
        await self._log(execution_id, level, message, {"state": state.value})

    async def _log(
        self,
        execution_id: str,
        level: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Add log entry for an execution.

        Args:
            execution_id: Execution ID
            level: Log level
            message: Log message
            context: Additional structured context
        """
        log_entry = ExecutionLog(level=level, message=message, context=context)

        if execution_id not in self.execution_logs:
            self.execution_logs[execution_id] = []

        self.execution_logs[execution_id].append(log_entry)

        logger_method = getattr(logger, level.lower(), logger.info)
        logger_method(f"[{execution_id[:8]}] {message}")

    def get_state(self, execution_id: str) -> Optional[ExecutionState]:
        return self.execution_states.get(execution_id)

    def get_logs(self, execution_id: str) -> List[ExecutionLog]:
        """
        Get logs for a specific execution.

        Args:
            execution_id: Execution ID

        Returns:
            List of execution logs
        """
        return self.execution_logs.get(execution_id, [])

    def clear_logs(self, execution_id: Optional[str] = None) -> None:
        """
        Clear execution logs.

        Args:
            execution_id: If provided, clear logs for specific execution.
                         Otherwise, clear all logs.
        """
        if execution_id:
            self.execution_logs.pop(execution_id, None)
            self.execution_states.pop(execution_id, None)
        else:
            self.execution_logs.clear()
            self.execution_states.clear()
