"""
Command Line Interface
======================
``testgen-agent <sourceFilePath> [testFilePath] [packageName]``

Exit codes: 0 success (or usage help when called without arguments),
1 critical error, 2 iteration budget exhausted, 130 interrupted.
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from testgen_agent.cancellation import CancellationToken
from testgen_agent.config import AgentConfig, get_config
from testgen_agent.errors import (
    ConfigurationError,
    OperationCancelled,
    ToolNotFoundError,
)
from testgen_agent.llm_client import create_llm_client
from testgen_agent.observability import configure_console_logging, setup_file_logging
from testgen_agent.orchestrator import GenerationRequest, LoopState, RepairLoop
from testgen_agent.runner import GradleRunner
from testgen_agent.source_info import default_test_path

logger = logging.getLogger("testgen_agent.cli")

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_INTERRUPTED = 130


def log(message: str, level: str = "INFO") -> None:
    """Print timestamped progress message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{level:5s}] {message}", flush=True)


def log_section(title: str) -> None:
    """Print a section header."""
    print("\n" + "=" * 80)
    print(f"  {title}")
    print("=" * 80)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testgen-agent",
        description=(
            "Generate JUnit 5 tests for a Kotlin source file with an LLM and "
            "repair them until they compile and pass."
        ),
    )
    parser.add_argument("source", help="Kotlin source file to test")
    parser.add_argument(
        "test_path",
        nargs="?",
        help="Where to write the test file (default: <source dir>/<Name>Test.kt)",
    )
    parser.add_argument(
        "package",
        nargs="?",
        help="Package of the test class (default: detected from the source)",
    )
    parser.add_argument("--max-iterations", type=int, help="Iteration budget")
    parser.add_argument("--provider", choices=["gemini", "deepseek"], help="LLM provider")
    parser.add_argument("--model", help="Model identifier for the selected provider")
    parser.add_argument("--timeout", type=int, help="Gradle timeout in seconds")
    parser.add_argument(
        "--compile-mode",
        choices=["structural", "gradle"],
        help="How the compiling stage checks the test file",
    )
    parser.add_argument("--log-file", action="store_true", help="Also write JSON logs to logs/")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def apply_overrides(config: AgentConfig, args: argparse.Namespace) -> AgentConfig:
    """Return a copy of *config* with the command line options applied."""
    llm = config.llm.model_copy()
    runner = config.runner.model_copy()
    loop = config.loop.model_copy()
    observability = config.observability.model_copy()

    if args.provider:
        llm.provider = args.provider
    if args.model:
        if llm.provider == "deepseek":
            llm.deepseek_model = args.model
        else:
            llm.gemini_model = args.model
    if args.timeout is not None:
        runner.timeout_seconds = args.timeout
    if args.compile_mode:
        runner.compile_mode = args.compile_mode
    if args.max_iterations is not None:
        if args.max_iterations < 1:
            raise ConfigurationError("--max-iterations must be at least 1")
        loop.max_iterations = args.max_iterations
    if args.verbose:
        observability.log_level = "DEBUG"
    if args.log_file:
        observability.log_file_enabled = True

    return config.model_copy(
        update={
            "llm": llm,
            "runner": runner,
            "loop": loop,
            "observability": observability,
        }
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point; returns the process exit code."""
    argv = sys.argv[1:] if argv is None else argv
    parser = build_parser()

    if not argv:
        parser.print_help()
        return EXIT_SUCCESS

    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        # argparse exits 0 for --help and 2 for usage errors
        return EXIT_SUCCESS if not e.code else EXIT_ERROR

    cancel = CancellationToken()

    try:
        config = apply_overrides(get_config(), args)

        obs = config.observability
        configure_console_logging(obs.log_level, obs.log_format)
        if obs.log_file_enabled:
            log_file = setup_file_logging(obs.logs_dir)
            log(f"Logging to {log_file}")

        source_path = Path(args.source)
        try:
            source_code = source_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            log(f"Cannot read source file {source_path}: {e}", "ERROR")
            return EXIT_ERROR

        request = GenerationRequest.from_source(
            source_code,
            str(source_path),
            package_name=args.package,
            default_package=config.loop.default_package,
        )
        test_path = args.test_path or default_test_path(str(source_path))

        log_section("KOTLIN TEST GENERATION")
        log(f"Source:  {source_path}")
        log(f"Class:   {request.target_name}")
        log(f"Package: {request.package_name}")
        log(f"Tests:   {test_path}")
        model = (
            config.llm.deepseek_model
            if config.llm.provider == "deepseek"
            else config.llm.gemini_model
        )
        log(f"Model:   {config.llm.provider} ({model})")

        with create_llm_client(config) as llm_client:
            loop = RepairLoop(
                llm_client,
                GradleRunner(config.runner),
                config=config.loop,
                on_progress=log,
            )
            report = loop.run(request, test_path, cancel=cancel)

    except KeyboardInterrupt:
        cancel.cancel()
        log("Interrupted by user", "WARN")
        return EXIT_INTERRUPTED
    except OperationCancelled as e:
        log(f"Cancelled: {e}", "WARN")
        return EXIT_INTERRUPTED
    except (ConfigurationError, ToolNotFoundError, ValidationError) as e:
        log(str(e), "ERROR")
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Unexpected error")
        log(f"Unexpected error: {e}", "ERROR")
        return EXIT_ERROR

    if report.state is LoopState.SUCCESS:
        log(f"Tests written to {report.artifact_path} and passing")
        return EXIT_SUCCESS

    stage = report.last_failed_stage.value if report.last_failed_stage else "unknown"
    log(f"Iteration budget exhausted after {report.iterations} iteration(s)", "ERROR")
    log(f"Last failed stage: {stage}", "ERROR")
    print(report.diagnostics)
    log(f"Last attempt left at {report.artifact_path}", "ERROR")
    return EXIT_EXHAUSTED


if __name__ == "__main__":
    sys.exit(main())
