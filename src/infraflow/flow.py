"""Dependency-ordered task graph with per-task timeouts.

Tasks whose dependencies have all finished run concurrently as asyncio tasks.
A task whose condition is false is skipped and counts as finished for its
dependents. A failed task blocks its dependents but not unrelated branches,
unless the graph runs in fail-fast mode, where the first failure cancels
everything still running.

EXAMPLE:
```python
graph = TaskGraph("reconcile")
rg = graph.add_task("ensure resource group", ensurer.ensure_resource_group, timeout=120)
graph.add_task("ensure vnet", ensurer.ensure_virtual_network, dependencies=[rg])
result = await graph.run(on_task_success=persist)
```
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

TaskFn = Callable[[], Awaitable[None]]
TaskCallback = Callable[[str], Awaitable[None]]


class TaskState(str, Enum):
    """Outcome of one task in a run."""

    PENDING = "pending"
    SKIPPED = "skipped"  # Condition was false
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"  # A dependency failed or was blocked
    CANCELLED = "cancelled"  # Stopped by fail-fast


class GraphError(Exception):
    """Raised when the task graph is malformed."""

    pass


class CyclicDependencyError(GraphError):
    """Raised when the task dependencies contain a cycle."""

    pass


class TaskError(Exception):
    """A task failed; ``cause`` is the original error."""

    def __init__(self, task: str, cause: BaseException) -> None:
        self.task = task
        self.cause = cause
        super().__init__(f"failed to {task}: {cause}")
        self.__cause__ = cause


class FlowError(Exception):
    """One or more tasks of a flow failed."""

    def __init__(self, flow: str, errors: list[TaskError]) -> None:
        self.flow = flow
        self.errors = errors
        details = "; ".join(str(e) for e in errors)
        super().__init__(f"flow {flow} failed: {details}")

    @property
    def causes(self) -> list[BaseException]:
        """The original errors of the failed tasks."""
        return [e.cause for e in self.errors]


@dataclass
class Task:
    """A node of the graph."""

    name: str
    fn: TaskFn
    timeout_seconds: float | None = None
    dependencies: list[str] = field(default_factory=list)
    do_if: bool = True


@dataclass
class FlowResult:
    """States of every task after a run."""

    flow: str
    states: dict[str, TaskState]
    errors: list[TaskError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    @property
    def error(self) -> FlowError | None:
        return FlowError(self.flow, self.errors) if self.errors else None


@dataclass
class TaskGraph:
    """Directed acyclic graph of tasks."""

    name: str
    tasks: dict[str, Task] = field(default_factory=dict)

    def add_task(
        self,
        name: str,
        fn: TaskFn,
        *,
        timeout: float | None = None,
        dependencies: Iterable[str] = (),
        do_if: bool = True,
    ) -> str:
        """Add a task to the graph.

        Args:
            name: Unique task name, also used in error messages.
            fn: Coroutine function doing the work.
            timeout: Seconds after which the task is cancelled.
            dependencies: Names of tasks that must finish first.
            do_if: When False the task is skipped.

        Returns:
            The task name, for use in later dependency lists.

        Raises:
            GraphError: If the name is already taken.
        """
        if name in self.tasks:
            raise GraphError(f"duplicate task: {name}")
        self.tasks[name] = Task(
            name=name,
            fn=fn,
            timeout_seconds=timeout,
            dependencies=list(dependencies),
            do_if=do_if,
        )
        return name

    def validate(self) -> None:
        """Check that dependencies exist and contain no cycle.

        Raises:
            GraphError: If a dependency names an unknown task.
            CyclicDependencyError: If a cycle is detected.
        """
        for task in self.tasks.values():
            unknown = [dep for dep in task.dependencies if dep not in self.tasks]
            if unknown:
                raise GraphError(f"task {task.name} depends on unknown tasks: {unknown}")

        # Kahn's algorithm
        in_degree = {name: len(task.dependencies) for name, task in self.tasks.items()}
        dependents: dict[str, list[str]] = {name: [] for name in self.tasks}
        for task in self.tasks.values():
            for dep in task.dependencies:
                dependents[dep].append(task.name)

        queue = [name for name, degree in in_degree.items() if degree == 0]
        processed = 0
        while queue:
            current = queue.pop(0)
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.tasks):
            cycle_nodes = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    async def run(
        self,
        *,
        on_task_success: TaskCallback | None = None,
        fail_fast: bool = False,
    ) -> FlowResult:
        """Run every task in dependency order.

        Args:
            on_task_success: Awaited after each successful task, e.g. to persist
                progress. Its failures are logged and do not fail the task.
            fail_fast: Cancel running tasks and start no new ones after the
                first failure.

        Returns:
            The result with the state of every task and the collected errors.

        Raises:
            GraphError: If the graph is malformed.
        """
        self.validate()
        states = {name: TaskState.PENDING for name in self.tasks}
        errors: list[TaskError] = []
        running: dict[asyncio.Task[None], str] = {}

        logger.info("Flow started", extra={"flow": self.name, "tasks": len(self.tasks)})
        try:
            while True:
                if not (fail_fast and errors):
                    for name in self._schedule(states, running.values()):
                        running[asyncio.create_task(self._execute(self.tasks[name]))] = name
                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    name = running.pop(finished)
                    if finished.cancelled():
                        states[name] = TaskState.CANCELLED
                        continue
                    exc = finished.exception()
                    if exc is None:
                        states[name] = TaskState.SUCCEEDED
                        await self._notify(on_task_success, name)
                        continue

                    states[name] = TaskState.FAILED
                    errors.append(TaskError(name, exc))
                    logger.error(
                        "Task failed",
                        extra={"flow": self.name, "task": name, "error": str(exc)},
                    )
                    if fail_fast:
                        for pending in running:
                            pending.cancel()
        except asyncio.CancelledError:
            for pending in running:
                pending.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        for name, state in states.items():
            if state == TaskState.PENDING:
                states[name] = TaskState.CANCELLED if fail_fast and errors else TaskState.BLOCKED

        logger.info(
            "Flow finished",
            extra={"flow": self.name, "succeeded": not errors, "failed_tasks": len(errors)},
        )
        return FlowResult(flow=self.name, states=states, errors=errors)

    def _schedule(self, states: dict[str, TaskState], running: Iterable[str]) -> list[str]:
        """Resolve skips and blocks, then return the tasks ready to start."""
        running = set(running)
        finished = (TaskState.SUCCEEDED, TaskState.SKIPPED)
        broken = (TaskState.FAILED, TaskState.BLOCKED, TaskState.CANCELLED)

        changed = True
        while changed:
            changed = False
            for name, task in self.tasks.items():
                if states[name] != TaskState.PENDING or name in running:
                    continue
                dep_states = [states[dep] for dep in task.dependencies]
                if any(state in broken for state in dep_states):
                    states[name] = TaskState.BLOCKED
                    changed = True
                elif all(state in finished for state in dep_states) and not task.do_if:
                    logger.debug("Task skipped", extra={"flow": self.name, "task": name})
                    states[name] = TaskState.SKIPPED
                    changed = True

        return [
            name
            for name, task in self.tasks.items()
            if states[name] == TaskState.PENDING
            and name not in running
            and all(states[dep] in finished for dep in task.dependencies)
        ]

    async def _execute(self, task: Task) -> None:
        logger.info("Task started", extra={"flow": self.name, "task": task.name})
        start = time.monotonic()
        if task.timeout_seconds is None:
            await task.fn()
        else:
            try:
                await asyncio.wait_for(task.fn(), timeout=task.timeout_seconds)
            except TimeoutError as e:
                raise TimeoutError(f"timed out after {task.timeout_seconds}s") from e
        logger.info(
            "Task succeeded",
            extra={
                "flow": self.name,
                "task": task.name,
                "duration_seconds": round(time.monotonic() - start, 3),
            },
        )

    async def _notify(self, callback: TaskCallback | None, name: str) -> None:
        if callback is None:
            return
        try:
            await callback(name)
        except Exception as e:
            logger.warning(
                "Progress callback failed",
                extra={"flow": self.name, "task": name, "error": str(e)},
            )
