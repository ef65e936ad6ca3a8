"""Test lifecycle runner.

Each test moves `pending -> running -> passed | failed`, re-entering `running`
for every retry. Only the last attempt is reported. Recording and cost lookups
are best-effort instrumentation: their failures are logged and never change a
test's outcome. Failing to open the session aborts the whole suite.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Literal, Protocol

from .assertions import Assertions
from .collaborators import ArtifactRecorder, CostSource, CostSummary, VisionAgent
from .errors import SuiteAborted, WaitTimeout
from .ipc import IpcInterceptor
from .logging_utils import TestLogger
from .paths import video_path_for
from .runtime_config import RunnerConfig
from .session import TestSession
from .virtual_list import VirtualListProbe

logger = logging.getLogger(__name__)

TestStatus = Literal["pending", "running", "passed", "failed", "skipped"]
DEFAULT_SUITE_NAME = "Desktop Tests"


@dataclass
class TestContext:
    """Everything a test body can reach."""

    __test__ = False

    session: TestSession
    config: RunnerConfig
    log: TestLogger
    assertions: Assertions = field(default_factory=Assertions)
    # Only set in hybrid mode.
    agent: VisionAgent | None = None

    @property
    def ipc(self) -> IpcInterceptor:
        return self.session.ipc

    def virtual_list(self, selector: str) -> VirtualListProbe:
        return self.session.virtual_list(selector)


TestFunction = Callable[[TestContext], Awaitable[None]]


@dataclass(frozen=True)
class TestCase:
    """Test identity and body supplied by test authors.

    `retries` and `timeout_ms` fall back to the runner config when unset.
    """

    __test__ = False

    name: str
    fn: TestFunction
    category: str | None = None
    timeout_ms: int | None = None
    skip: bool = False
    only: bool = False
    retries: int | None = None


@dataclass(frozen=True)
class TestResult:
    """Outcome of the final attempt of one test."""

    __test__ = False

    test: TestCase
    passed: bool
    duration_ms: float
    attempts: int = 1
    error: BaseException | None = None
    video: str | None = None
    used_agent: bool = False
    cost: float | None = None

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error) or self.error.__class__.__name__


@dataclass(frozen=True)
class TestSuiteResult:
    """Aggregate over one suite run."""

    __test__ = False

    name: str
    tests: tuple[TestResult, ...]
    passed: int
    failed: int
    skipped: int
    duration_ms: float
    total_cost: float

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0


class Reporter(Protocol):
    """Optional lifecycle hooks; formatting and printing live outside the runner."""

    def on_suite_start(self, name: str) -> None: ...

    def on_test_start(self, test: TestCase) -> None: ...

    def on_test_end(self, result: TestResult) -> None: ...

    def on_suite_end(self, result: TestSuiteResult) -> None: ...


class TestRunner:
    """Runs test cases against one session."""

    __test__ = False

    def __init__(
        self,
        session: TestSession,
        *,
        config: RunnerConfig | None = None,
        recorder: ArtifactRecorder | None = None,
        cost_source: CostSource | None = None,
        agent: VisionAgent | None = None,
        reporter: Reporter | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.session = session
        self.config = config or RunnerConfig()
        self._recorder = recorder
        self._cost_source = cost_source
        self._agent = agent
        self._reporter = reporter
        self._clock = clock
        self._results: list[TestResult] = []
        self._states: dict[str, TestStatus] = {}

    @property
    def results(self) -> list[TestResult]:
        return list(self._results)

    @property
    def states(self) -> dict[str, TestStatus]:
        return dict(self._states)

    def reset(self) -> None:
        self._results.clear()
        self._states.clear()

    def _notify(self, hook: str, *args: object) -> None:
        if self._reporter is None:
            return
        callback = getattr(self._reporter, hook, None)
        if not callable(callback):
            return
        try:
            callback(*args)
        except Exception as exc:
            logger.warning(
                "Reporter hook %s failed: %s",
                hook,
                exc,
                extra={"event": "runner_reporter_failed"},
            )

    def _make_context(self, test: TestCase) -> TestContext:
        return TestContext(
            session=self.session,
            config=self.config,
            log=TestLogger(logging.getLogger("deskprobe.test"), test.name),
            agent=self._agent if self.config.hybrid else None,
        )

    async def _start_recording(self, test: TestCase) -> str | None:
        if not self.config.video_dir or self._recorder is None:
            return None
        path = str(video_path_for(self.config.video_dir, test.name))
        try:
            await self._recorder.start_recording(path)
        except Exception as exc:
            logger.warning(
                "Recording start failed for %s: %s",
                test.name,
                exc,
                extra={"event": "runner_recording_start_failed"},
            )
            return None
        return path

    async def _stop_recording(self, test: TestCase) -> None:
        if self._recorder is None:
            return
        try:
            await self._recorder.stop_recording()
        except Exception as exc:
            logger.warning(
                "Recording stop failed for %s: %s",
                test.name,
                exc,
                extra={"event": "runner_recording_stop_failed"},
            )

    def _cost_snapshot(self) -> CostSummary | None:
        if self._cost_source is None:
            return None
        try:
            return self._cost_source.cost_summary()
        except Exception as exc:
            logger.warning(
                "Cost lookup failed: %s", exc, extra={"event": "runner_cost_lookup_failed"}
            )
            return None

    async def _run_attempt(self, test: TestCase, context: TestContext, timeout_ms: int) -> None:
        task = asyncio.ensure_future(test.fn(context))
        done, _pending = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task in done:
            task.result()
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise WaitTimeout(f"Test {test.name!r} timed out after {timeout_ms}ms")

    async def run_test(self, test: TestCase) -> TestResult:
        """Run one test with retries and return its final result."""
        self._states[test.name] = "pending"
        self._notify("on_test_start", test)
        logger.info("Running test %s", test.name, extra={"event": "test_started"})
        started = self._clock()

        video = await self._start_recording(test)
        cost_before = self._cost_snapshot()
        context = self._make_context(test)
        retries = max(0, test.retries if test.retries is not None else self.config.retries)
        timeout_ms = test.timeout_ms or self.config.timeout_ms

        attempts = 0
        passed = False
        error: BaseException | None = None
        while attempts <= retries:
            attempts += 1
            self._states[test.name] = "running"
            try:
                await self._run_attempt(test, context, timeout_ms)
            except Exception as exc:
                error = exc
                if attempts <= retries:
                    logger.info(
                        "Retry %d/%d for %s after: %s",
                        attempts,
                        retries,
                        test.name,
                        exc,
                        extra={"event": "test_retry", "test_name": test.name},
                    )
                continue
            passed = True
            error = None
            break

        if video is not None:
            await self._stop_recording(test)

        used_agent = False
        cost: float | None = None
        cost_after = self._cost_snapshot()
        if cost_before is not None and cost_after is not None:
            delta = cost_after.since(cost_before)
            used_agent = delta.total_calls > 0
            cost = delta.total_cost

        result = TestResult(
            test=test,
            passed=passed,
            duration_ms=(self._clock() - started) * 1000.0,
            attempts=attempts,
            error=error,
            video=video,
            used_agent=used_agent,
            cost=cost,
        )
        self._states[test.name] = "passed" if passed else "failed"
        self._results.append(result)
        logger.info(
            "Test %s %s",
            test.name,
            "passed" if passed else "failed",
            extra={
                "event": "test_finished",
                "passed": passed,
                "attempts": attempts,
                "error": result.error_message,
            },
        )
        self._notify("on_test_end", result)
        return result

    async def run_all(
        self, tests: Sequence[TestCase], suite_name: str = DEFAULT_SUITE_NAME
    ) -> TestSuiteResult:
        """Open the session, run the selected tests, and aggregate results.

        Raises `SuiteAborted` when the session cannot be opened.
        """
        self._notify("on_suite_start", suite_name)
        try:
            await self.session.open()
        except Exception as exc:
            logger.error(
                "Connection failed: %s", exc, extra={"event": "suite_aborted"}
            )
            raise SuiteAborted(f"Connection failed: {exc}") from exc

        only = [test for test in tests if test.only]
        selected = only if only else [test for test in tests if not test.skip]
        selected_ids = {id(test) for test in selected}
        for test in tests:
            if id(test) not in selected_ids:
                self._states[test.name] = "skipped"

        suite_results: list[TestResult] = []
        try:
            for test in selected:
                result = await self.run_test(test)
                suite_results.append(result)
                if not result.passed and self.config.stop_on_failure:
                    logger.info(
                        "Stopping suite after failure of %s",
                        test.name,
                        extra={"event": "suite_stopped_on_failure"},
                    )
                    break
        finally:
            await self.session.close()

        suite = TestSuiteResult(
            name=suite_name,
            tests=tuple(suite_results),
            passed=sum(1 for result in suite_results if result.passed),
            failed=sum(1 for result in suite_results if not result.passed),
            skipped=len(tests) - len(selected),
            duration_ms=sum(result.duration_ms for result in suite_results),
            total_cost=sum(result.cost or 0.0 for result in suite_results),
        )
        self._notify("on_suite_end", suite)
        return suite


async def run_suite(
    runner: TestRunner, tests: Sequence[TestCase], suite_name: str = DEFAULT_SUITE_NAME
) -> int:
    """Run a suite and return a process exit status."""
    try:
        suite = await runner.run_all(tests, suite_name)
    except SuiteAborted as exc:
        logger.error("Suite %s aborted: %s", suite_name, exc)
        return 1
    return suite.exit_code
