"""
Isolated script execution for probehost plugins.

Plugin scripts run inside an embedded QuickJS interpreter. Each
SandboxContext owns one brand-new interpreter context, so nothing a
script defines or mutates survives past the probe call that created it.

The context exposes no module loader, filesystem or network objects of
its own. The only way out of the sandbox is through the host callables
injected with :meth:`SandboxContext.inject`.

Example:
    from probehost.plugins.sandbox import SandboxContext, SandboxPolicy

    sandbox = SandboxContext(SandboxPolicy(memory_limit_mb=64))
    sandbox.inject({"__host_echo": lambda s: s})
    sandbox.eval("globalThis.answer = Promise.resolve(42)")
    sandbox.drain()
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

import quickjs

logger = logging.getLogger(__name__)


@dataclass
class SandboxPolicy:
    """Resource limits applied to each sandbox context.

    Attributes:
        memory_limit_mb: Heap limit for the interpreter, 0 for none.
        max_stack_kb: Interpreter stack limit, 0 for the engine default.
        max_pending_jobs: Upper bound on jobs run by one drain.
    """

    memory_limit_mb: int = 256
    max_stack_kb: int = 1024
    max_pending_jobs: int = 100_000


class SandboxError(Exception):
    """Raised when the interpreter rejects an operation.

    Attributes:
        stage: Which sandbox operation failed (create, inject, eval, drain).
    """

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"sandbox {stage} failed: {message}")


class SandboxContext:
    """One fresh, isolated scripting context.

    The context supports exactly three things: injecting named host
    callables as globals, evaluating script text, and draining the
    interpreter's pending-job queue so that promises settle.
    """

    def __init__(self, policy: SandboxPolicy | None = None):
        self._policy = policy or SandboxPolicy()
        try:
            self._ctx = quickjs.Context()
            if self._policy.memory_limit_mb > 0:
                self._ctx.set_memory_limit(self._policy.memory_limit_mb * 1024 * 1024)
            if self._policy.max_stack_kb > 0:
                self._ctx.set_max_stack_size(self._policy.max_stack_kb * 1024)
        except Exception as e:
            raise SandboxError("create", str(e)) from e

    @property
    def policy(self) -> SandboxPolicy:
        return self._policy

    def inject(self, callables: Mapping[str, Callable[..., Any]]) -> None:
        """Expose host callables as global functions."""
        for name, func in callables.items():
            try:
                self._ctx.add_callable(name, func)
            except Exception as e:
                raise SandboxError("inject", f"{name}: {e}") from e

    def eval(self, script: str) -> Any:
        """Evaluate script text in the global scope.

        Returns:
            The completion value converted by the engine (primitives only
            are meaningful to callers).

        Raises:
            SandboxError: On a syntax error or an uncaught exception.
        """
        try:
            return self._ctx.eval(script)
        except quickjs.JSException as e:
            raise SandboxError("eval", str(e)) from e

    def eval_json(self, expression: str) -> Any:
        """Evaluate an expression and return it decoded from JSON.

        Non-finite numbers and undefined values come back as ``None``.
        """
        text = self.eval(
            "JSON.stringify((" + expression + "), function (key, value) {"
            " return (typeof value === 'number' && !isFinite(value)) ? null : value; })"
        )
        if text is None:
            return None
        return json.loads(text)

    def drain(self) -> int:
        """Run pending jobs until the queue is empty.

        Returns:
            Number of jobs executed.
        """
        executed = 0
        try:
            while executed < self._policy.max_pending_jobs and self._ctx.execute_pending_job():
                executed += 1
        except quickjs.JSException as e:
            raise SandboxError("drain", str(e)) from e
        if executed >= self._policy.max_pending_jobs:
            logger.warning(f"Stopped draining after {executed} pending jobs")
        return executed

    def __repr__(self) -> str:
        return f"<SandboxContext memory_limit_mb={self._policy.memory_limit_mb}>"
