"""
Build/Test Runner
=================
Runs generated Kotlin tests through the project's Gradle build.

The runner locates the project root by walking upward from the test file,
prefers the project's Gradle wrapper over a ``gradle`` on ``PATH``, and
captures merged stdout+stderr.  Exit code 0 is the only success.  A
wall-clock timeout is enforced by killing the child process, and an
optional :class:`CancellationToken` kills it on demand.

Recoverable failures (non-zero exit, timeout) come back as an
:class:`ExecutionOutcome`; a missing build tool raises
:class:`ToolNotFoundError` because no amount of code repair fixes it.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from testgen_agent.cancellation import CancellationToken
from testgen_agent.config import RunnerConfig
from testgen_agent.errors import OperationCancelled, ToolNotFoundError

logger = logging.getLogger("testgen_agent.runner")

# Kotlin compiler diagnostics, both the current and the pre-1.9 layout:
#   e: file:///src/test/kotlin/FooTest.kt:12:5 Unresolved reference 'bar'.
#   e: /src/test/kotlin/FooTest.kt: (12, 5): Unresolved reference: bar
_KOTLINC_DIAG_RE = re.compile(
    r"^([ew]): (?:file://)?(.+?\.kts?)"
    r"(?::(\d+):(\d+)|: \((\d+), (\d+)\):?)\s+(.*)$",
    re.MULTILINE,
)


@dataclass
class CompilerDiagnostic:
    """A single Kotlin compiler diagnostic (error or warning).

    Attributes:
        file: Source file that produced the diagnostic.
        line: Line number.
        column: Column number.
        level: ``"error"`` or ``"warning"``.
        message: Human-readable description.
    """

    file: str
    line: int
    column: int
    level: str
    message: str

    def __str__(self) -> str:
        return f"{Path(self.file).name}:{self.line}:{self.column}: {self.level}: {self.message}"


@dataclass
class ExecutionOutcome:
    """Result of a structural check, compilation or test run.

    Attributes:
        passed: Whether the stage succeeded (exit code 0 for processes).
        combined_output: Merged stdout+stderr, or the check's message.
        return_code: Process return code (``-1`` when no process ran).
        command: Command line that was executed, if any.
        timed_out: The process was killed after the wall-clock limit.
        ran_full_suite: The targeted run found no tests and the full suite
            was run instead.
    """

    passed: bool
    combined_output: str = ""
    return_code: int = -1
    command: List[str] = field(default_factory=list)
    timed_out: bool = False
    ran_full_suite: bool = False


class GradleRunner:
    """Runs Gradle ``test`` tasks for a generated test file.

    Args:
        config: ``RunnerConfig``; defaults are used when ``None``.
    """

    REQUIRED_STRUCTURE = (
        "import org.junit.jupiter.api.Test",
        "@Test",
        "class ",
    )

    def __init__(self, config: Optional[RunnerConfig] = None) -> None:
        self.config = config or RunnerConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_structure(self, artifact_path: str, package_name: str) -> ExecutionOutcome:
        """Check the written test file for the elements every test needs.

        Reads the artifact back from disk, so a failed or partial write is
        caught here as well.
        """
        path = Path(artifact_path)
        if not path.exists():
            return ExecutionOutcome(
                passed=False,
                combined_output=f"Test file does not exist: {artifact_path}",
            )

        content = path.read_text(encoding="utf-8")
        required = [f"package {package_name}", *self.REQUIRED_STRUCTURE]
        missing = [element for element in required if element not in content]

        if missing:
            return ExecutionOutcome(
                passed=False,
                combined_output="Missing required elements: " + ", ".join(missing),
            )
        return ExecutionOutcome(passed=True, combined_output="Structure check passed", return_code=0)

    def compile(
        self,
        artifact_path: str,
        package_name: str,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionOutcome:
        """Compiling stage: structural check, then (optionally) Gradle.

        With ``compile_mode == "gradle"`` the project's test sources are
        compiled with the configured Gradle task after the structural
        check passes.
        """
        outcome = self.check_structure(artifact_path, package_name)
        if not outcome.passed or self.config.compile_mode != "gradle":
            return outcome

        project_root = self.find_project_root(Path(artifact_path).resolve().parent)
        command = [*self.locate_build_tool(project_root), self.config.compile_task]
        return self._run(command, project_root, cancel)

    def compile_and_run(
        self,
        artifact_path: str,
        test_identifier: str,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionOutcome:
        """Run exactly *test_identifier*, falling back to the full suite.

        Args:
            artifact_path: Path of the generated test file.
            test_identifier: Fully qualified test class name.
            cancel: Optional cancellation token.

        Returns:
            :class:`ExecutionOutcome` of the (last) Gradle invocation.

        Raises:
            ToolNotFoundError: No Gradle wrapper or executable found.
            OperationCancelled: *cancel* fired while Gradle was running.
        """
        project_root = self.find_project_root(Path(artifact_path).resolve().parent)
        tool = self.locate_build_tool(project_root)

        command = [*tool, "clean", "test", "--tests", test_identifier]
        outcome = self._run(command, project_root, cancel)

        if (
            not outcome.passed
            and not outcome.timed_out
            and self.config.no_tests_marker in outcome.combined_output
        ):
            logger.info("No tests matched %s, running the full suite", test_identifier)
            outcome = self._run([*tool, "clean", "test", "--info"], project_root, cancel)
            outcome.ran_full_suite = True

        return outcome

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def find_project_root(self, start: Path) -> Path:
        """Walk upward from *start* to the first directory holding a build
        descriptor; fall back to *start* itself.
        """
        return find_project_root(start, self.config.build_descriptors)

    def locate_build_tool(self, project_root: Path) -> List[str]:
        """Return the command prefix that invokes Gradle for *project_root*.

        Raises:
            ToolNotFoundError: Neither a wrapper nor ``gradle`` is available.
        """
        wrapper = project_root / ("gradlew.bat" if os.name == "nt" else "gradlew")
        if wrapper.is_file():
            if os.name != "nt" and not os.access(wrapper, os.X_OK):
                return ["sh", str(wrapper)]
            return [str(wrapper)]

        system_gradle = shutil.which(self.config.gradle_command)
        if system_gradle:
            return [system_gradle]

        raise ToolNotFoundError(
            f"Gradle not found: no wrapper in {project_root} and "
            f"'{self.config.gradle_command}' is not on PATH"
        )

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------

    def _run(
        self,
        command: List[str],
        cwd: Path,
        cancel: Optional[CancellationToken] = None,
    ) -> ExecutionOutcome:
        """Run *command* in *cwd*, merging stderr into stdout."""
        if cancel is not None:
            cancel.raise_if_cancelled()

        timeout = self.config.timeout_seconds
        if cancel is not None:
            timeout = cancel.clip_timeout(timeout)

        logger.info("Running: %s (cwd=%s)", " ".join(command), cwd)

        try:
            proc = subprocess.Popen(
                command,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as e:
            raise ToolNotFoundError(f"Build tool could not be started: {e}") from e

        if cancel is not None:
            cancel.add_callback(proc.kill)

        timed_out = False
        try:
            output, _ = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            output, _ = proc.communicate()
            timed_out = True
        finally:
            if cancel is not None:
                cancel.remove_callback(proc.kill)

        if cancel is not None and cancel.cancelled:
            raise OperationCancelled(f"Cancelled while running: {' '.join(command)}")

        output = (output or "").strip()
        if timed_out:
            logger.warning("Process timed out after %ss", timeout)
            output = f"{output}\nProcess timed out after {timeout}s and was killed".strip()

        return ExecutionOutcome(
            passed=not timed_out and proc.returncode == 0,
            combined_output=output,
            return_code=proc.returncode if proc.returncode is not None else -1,
            command=list(command),
            timed_out=timed_out,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    @staticmethod
    def parse_diagnostics(
        output: str,
    ) -> tuple[List[CompilerDiagnostic], List[CompilerDiagnostic]]:
        """Parse Kotlin compiler output for errors and warnings.

        Args:
            output: Combined Gradle stdout+stderr.

        Returns:
            Tuple of (errors, warnings).
        """
        errors: List[CompilerDiagnostic] = []
        warnings: List[CompilerDiagnostic] = []

        for match in _KOTLINC_DIAG_RE.finditer(output):
            line = match.group(3) or match.group(5)
            column = match.group(4) or match.group(6)
            diag = CompilerDiagnostic(
                file=match.group(2).strip(),
                line=int(line),
                column=int(column),
                level="error" if match.group(1) == "e" else "warning",
                message=match.group(7).strip(),
            )
            if diag.level == "error":
                errors.append(diag)
            else:
                warnings.append(diag)

        return errors, warnings


def find_project_root(start: Path, descriptors: Sequence[str]) -> Path:
    """Walk upward from *start* looking for any of *descriptors*.

    Args:
        start: Directory to start from.
        descriptors: File names that mark a project root.

    Returns:
        The first matching ancestor (including *start*), else *start*.
    """
    start = Path(start)
    for directory in (start, *start.parents):
        if any((directory / name).exists() for name in descriptors):
            return directory
    return start


def format_for_llm(outcome: ExecutionOutcome, max_chars: int = 12000) -> str:
    """Turn a failed outcome into prompt-friendly diagnostics.

    Parsed compiler errors come first; the tail of the raw output
    follows, since Gradle prints its failure summary last.
    """
    errors, _warnings = GradleRunner.parse_diagnostics(outcome.combined_output)
    parts: List[str] = []

    if errors:
        parts.append("The following compiler errors were found:")
        parts.extend(f"{i}. {err}" for i, err in enumerate(errors, 1))
        parts.append("")

    output = outcome.combined_output
    if len(output) > max_chars:
        output = "...\n" + output[-max_chars:]
    parts.append(output)

    return "\n".join(parts).strip()
