"""
Repair Loop Orchestrator
========================
Drives generation, extraction, validation, compilation and the test run
in a bounded generate/repair cycle.

States::

    INIT -> GENERATING -> VALIDATING -> COMPILING -> RUNNING -> SUCCESS
                ^             |             |           |
                +-------------+-------------+-----------+   (next iteration)

    any state -> EXHAUSTED once the iteration budget is spent

Every entry into ``GENERATING`` counts against the budget, including
entries whose LLM call fails.  Only the latest attempt and the latest
diagnostics survive between iterations, and the diagnostics always come
from the earliest stage that failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from testgen_agent.cancellation import CancellationToken
from testgen_agent.config import LoopConfig
from testgen_agent.errors import LLMError
from testgen_agent.extractor import CodeExtractor
from testgen_agent.observability import StructuredLogger
from testgen_agent.prompts import SYSTEM_INSTRUCTION, build_prompt
from testgen_agent.runner import format_for_llm
from testgen_agent.source_info import (
    detect_package_name,
    extract_class_name,
    qualified_test_name,
)
from testgen_agent.validator import StaticValidator

logger = logging.getLogger("testgen_agent.orchestrator")


class LoopState(str, Enum):
    INIT = "init"
    GENERATING = "generating"
    VALIDATING = "validating"
    COMPILING = "compiling"
    RUNNING = "running"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


class Stage(str, Enum):
    """Stage whose failure produced the current diagnostics."""

    GENERATION = "generation"
    VALIDATION = "validation"
    COMPILATION = "compilation"
    RUN = "run"


@dataclass(frozen=True)
class GenerationRequest:
    """Everything one generation call needs.

    Immutable; each retry builds a new request with :meth:`with_feedback`.
    """

    source_code: str
    source_identifier: str
    target_name: str
    package_name: str
    prior_attempt: Optional[str] = None
    prior_diagnostics: Optional[str] = None

    @classmethod
    def from_source(
        cls,
        source_code: str,
        source_identifier: str,
        package_name: Optional[str] = None,
        default_package: str = "com.example",
    ) -> "GenerationRequest":
        """Initial request, deriving class and package from the source."""
        return cls(
            source_code=source_code,
            source_identifier=source_identifier,
            target_name=extract_class_name(source_code),
            package_name=package_name or detect_package_name(source_code, default_package),
        )

    @property
    def is_repair(self) -> bool:
        return self.prior_attempt is not None or self.prior_diagnostics is not None

    def with_feedback(
        self,
        prior_attempt: Optional[str],
        prior_diagnostics: Optional[str],
    ) -> "GenerationRequest":
        return replace(
            self,
            prior_attempt=prior_attempt,
            prior_diagnostics=prior_diagnostics,
        )


@dataclass
class LoopReport:
    """Final result of :meth:`RepairLoop.run`.

    Attributes:
        state: Terminal state, ``SUCCESS`` or ``EXHAUSTED``.
        iterations: Number of ``GENERATING`` entries.
        generation_calls: Number of LLM calls made.
        last_failed_stage: Stage of the most recent failure, if any.
        diagnostics: Most recent failure text, verbatim.
        artifact_path: Where the attempts were written.
        final_code: The last extracted attempt.
    """

    state: LoopState
    iterations: int = 0
    generation_calls: int = 0
    last_failed_stage: Optional[Stage] = None
    diagnostics: str = ""
    artifact_path: str = ""
    final_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is LoopState.SUCCESS


class RepairLoop:
    """Bounded generate -> validate -> compile -> run -> repair loop.

    Args:
        llm_client: Object with ``generate(prompt, system_instruction=...,
            cancel=...) -> str`` (see :mod:`testgen_agent.llm_client`).
        runner: Object with ``compile(...)`` and ``compile_and_run(...)``
            returning ``ExecutionOutcome`` (see :mod:`testgen_agent.runner`).
        validator: Static validator; a default one when ``None``.
        extractor: Code extractor; a default one when ``None``.
        config: ``LoopConfig``; defaults are used when ``None``.
        on_progress: Optional callable receiving human-readable progress
            lines.
    """

    def __init__(
        self,
        llm_client,
        runner,
        validator: Optional[StaticValidator] = None,
        extractor: Optional[CodeExtractor] = None,
        config: Optional[LoopConfig] = None,
        on_progress: Optional[Callable[[str], None]] = None,
    ):
        self.llm_client = llm_client
        self.runner = runner
        self.config = config or LoopConfig()
        self.validator = validator or StaticValidator()
        self.extractor = extractor or CodeExtractor(self.config.language_tags)
        self.on_progress = on_progress
        self.state = LoopState.INIT
        self._events = StructuredLogger()

    def run(
        self,
        request: GenerationRequest,
        artifact_path: str,
        max_iterations: Optional[int] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> LoopReport:
        """Run the loop until the tests pass or the budget is spent.

        Args:
            request: Initial request (no prior attempt or diagnostics).
            artifact_path: File each attempt is written to.
            max_iterations: Overrides ``config.max_iterations``.
            cancel: Optional token passed to the LLM client and runner.

        Returns:
            :class:`LoopReport` in state ``SUCCESS`` or ``EXHAUSTED``.

        Raises:
            ConfigurationError: The LLM client has no credential.
            ToolNotFoundError: The build tool is missing.
            OperationCancelled: *cancel* fired.
            ValueError: *max_iterations* is less than 1.
        """
        limit = max_iterations if max_iterations is not None else self.config.max_iterations
        if limit < 1:
            raise ValueError("max_iterations must be at least 1")

        self.state = LoopState.INIT
        report = LoopReport(state=LoopState.INIT, artifact_path=str(artifact_path))
        test_identifier = qualified_test_name(request.target_name, request.package_name)
        current = request
        attempt: Optional[str] = None

        while report.iterations < limit:
            if cancel is not None:
                cancel.raise_if_cancelled()

            report.iterations += 1
            iteration = report.iterations
            self._enter(LoopState.GENERATING)
            self._events.log_iteration(iteration, limit, current.is_repair)
            self._progress(
                f"Iteration {iteration}/{limit}: "
                + ("repairing tests" if current.is_repair else "generating tests")
            )

            # Generating
            report.generation_calls += 1
            try:
                raw_text = self.llm_client.generate(
                    build_prompt(current),
                    system_instruction=SYSTEM_INSTRUCTION,
                    cancel=cancel,
                )
            except LLMError as e:
                self._events.log_error(e, {"iteration": iteration})
                diagnostics = (
                    f"The previous generation request failed ({type(e).__name__}: {e}). "
                    "Generate the complete test class again."
                )
                self._fail(report, Stage.GENERATION, diagnostics)
                current = request.with_feedback(attempt, diagnostics)
                continue

            attempt = self.extractor.extract(raw_text)
            report.final_code = attempt
            self._write_artifact(artifact_path, attempt)

            # Validating
            self._enter(LoopState.VALIDATING)
            validation = self.validator.validate(attempt, request.package_name)
            for warning in validation.warnings:
                logger.info("Validation warning: %s", warning)
            if not validation.passed:
                diagnostics = validation.as_diagnostics()
                self._fail(report, Stage.VALIDATION, diagnostics)
                current = request.with_feedback(attempt, diagnostics)
                continue

            # Compiling
            self._enter(LoopState.COMPILING)
            compiled = self.runner.compile(artifact_path, request.package_name, cancel=cancel)
            if not compiled.passed:
                self._fail(report, Stage.COMPILATION, compiled.combined_output)
                current = request.with_feedback(
                    attempt,
                    format_for_llm(compiled, self.config.max_diagnostics_chars),
                )
                continue

            # Running
            self._enter(LoopState.RUNNING)
            self._progress(f"Running {test_identifier}")
            outcome = self.runner.compile_and_run(artifact_path, test_identifier, cancel=cancel)
            if outcome.passed:
                self._enter(LoopState.SUCCESS)
                report.state = LoopState.SUCCESS
                self._progress(f"Tests passed after {iteration} iteration(s)")
                break

            self._fail(report, Stage.RUN, outcome.combined_output)
            current = request.with_feedback(
                attempt,
                format_for_llm(outcome, self.config.max_diagnostics_chars),
            )
        else:
            self._enter(LoopState.EXHAUSTED)
            report.state = LoopState.EXHAUSTED
            self._progress(f"Giving up after {report.iterations} iteration(s)")

        self._events.log_loop_finished(
            report.state.value,
            report.iterations,
            report.last_failed_stage.value if report.last_failed_stage else None,
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, state: LoopState) -> None:
        logger.debug("%s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(self, report: LoopReport, stage: Stage, diagnostics: str) -> None:
        report.last_failed_stage = stage
        report.diagnostics = diagnostics
        self._events.log_stage_failure(report.iterations, stage.value, diagnostics)
        self._progress(f"{stage.value.capitalize()} failed")

    def _progress(self, message: str) -> None:
        logger.info(message)
        if self.on_progress is not None:
            self.on_progress(message)

    @staticmethod
    def _write_artifact(artifact_path: str, code: str) -> None:
        path = Path(artifact_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(code, encoding="utf-8")
        logger.debug("Wrote %d chars to %s", len(code), path)
