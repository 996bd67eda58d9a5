"""
Kotlin Test Generation Agent
============================
Generates JUnit 5 tests for Kotlin sources with an LLM and repairs them
with validator, compiler and test-run feedback until they pass or the
iteration budget runs out.
"""

from testgen_agent.config import AgentConfig, get_config, reload_config
from testgen_agent.cancellation import CancellationToken
from testgen_agent.errors import (
    TestGenError,
    ConfigurationError,
    OperationCancelled,
    LLMError,
    TransportError,
    ContentBlockedError,
    MalformedResponseError,
    RunnerError,
    ToolNotFoundError,
)
from testgen_agent.llm_client import (
    BaseLLMClient,
    GeminiClient,
    DeepSeekClient,
    GenerationResult,
    create_llm_client,
)
from testgen_agent.extractor import CodeExtractor, extract
from testgen_agent.validator import StaticValidator, ValidationOutcome, validate
from testgen_agent.runner import GradleRunner, ExecutionOutcome, CompilerDiagnostic
from testgen_agent.orchestrator import (
    RepairLoop,
    GenerationRequest,
    LoopReport,
    LoopState,
    Stage,
)
from testgen_agent.observability import StructuredLogger, setup_file_logging


__all__ = [
    # Core
    "RepairLoop",
    "GenerationRequest",
    "LoopReport",
    "LoopState",
    "Stage",
    "AgentConfig",
    "get_config",
    "reload_config",
    "CancellationToken",
    # LLM
    "BaseLLMClient",
    "GeminiClient",
    "DeepSeekClient",
    "GenerationResult",
    "create_llm_client",
    # Extraction & validation
    "CodeExtractor",
    "extract",
    "StaticValidator",
    "ValidationOutcome",
    "validate",
    # Runner
    "GradleRunner",
    "ExecutionOutcome",
    "CompilerDiagnostic",
    # Errors
    "TestGenError",
    "ConfigurationError",
    "OperationCancelled",
    "LLMError",
    "TransportError",
    "ContentBlockedError",
    "MalformedResponseError",
    "RunnerError",
    "ToolNotFoundError",
    # Observability
    "StructuredLogger",
    "setup_file_logging",
]
