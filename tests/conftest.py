"""Shared test fixtures for the test generation agent.

Provides a scripted LLM client, a scripted runner, sample Kotlin sources
and configs that all test files can reuse.  Unit tests never need API
keys or a Gradle installation.
"""

import pytest
from typing import List, Optional

from testgen_agent.config import AgentConfig, LLMConfig, LoopConfig, RunnerConfig
from testgen_agent.runner import ExecutionOutcome


VALID_TEST_CODE = """\
package com.example

import org.junit.jupiter.api.Assertions.assertEquals
import org.junit.jupiter.api.Test

class CalculatorTest {

    private val calculator = Calculator()

    @Test
    fun `add should return sum of two numbers`() {
        assertEquals(5, calculator.add(2, 3))
    }

    @Test
    fun `subtract should return difference`() {
        assertEquals(1, calculator.subtract(3, 2))
    }
}"""

CALCULATOR_SOURCE = """\
package com.example

class Calculator {
    fun add(a: Int, b: Int): Int = a + b
    fun subtract(a: Int, b: Int): Int = a - b
}
"""


def fenced(code: str, tag: str = "kotlin") -> str:
    """Wrap *code* the way chat models usually answer."""
    return f"Here are the tests:\n\n```{tag}\n{code}\n```\n\nLet me know if you need more."


# ---------------------------------------------------------------------------
# Mock LLM client
# ---------------------------------------------------------------------------

class ScriptedLLMClient:
    """A fake LLM client that replays a list of responses.

    Items that are exceptions are raised instead of returned.  The last
    item repeats once the script runs out.

    Usage in tests::

        llm = ScriptedLLMClient(["bad", fenced(VALID_TEST_CODE)])
        llm.generate("prompt")  # -> "bad"
    """

    def __init__(self, responses: List):
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.call_count = 0

    def generate(self, prompt: str, system_instruction: Optional[str] = None,
                 temperature: Optional[float] = None, cancel=None) -> str:
        index = min(self.call_count, len(self.responses) - 1)
        self.call_count += 1
        self.prompts.append(prompt)
        item = self.responses[index]
        if isinstance(item, BaseException):
            raise item
        return item


# ---------------------------------------------------------------------------
# Mock runner
# ---------------------------------------------------------------------------

class ScriptedRunner:
    """A fake runner whose compile/run outcomes are scripted.

    Records the file content seen at each call so tests can assert on the
    artifact that was on disk when a stage ran.
    """

    def __init__(
        self,
        compile_outcomes: Optional[List[ExecutionOutcome]] = None,
        run_outcomes: Optional[List[ExecutionOutcome]] = None,
    ):
        self.compile_outcomes = compile_outcomes or [ExecutionOutcome(passed=True, return_code=0)]
        self.run_outcomes = run_outcomes or [ExecutionOutcome(passed=True, return_code=0)]
        self.compile_calls: List[str] = []
        self.run_calls: List[str] = []

    @staticmethod
    def _pick(outcomes, index):
        return outcomes[min(index, len(outcomes) - 1)]

    def compile(self, artifact_path, package_name, cancel=None):
        with open(artifact_path, encoding="utf-8") as f:
            self.compile_calls.append(f.read())
        return self._pick(self.compile_outcomes, len(self.compile_calls) - 1)

    def compile_and_run(self, artifact_path, test_identifier, cancel=None):
        with open(artifact_path, encoding="utf-8") as f:
            self.run_calls.append(f.read())
        return self._pick(self.run_outcomes, len(self.run_calls) - 1)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def valid_test_code():
    """Return a well-formed Kotlin JUnit 5 test class."""
    return VALID_TEST_CODE


@pytest.fixture
def calculator_source():
    """Return a small Kotlin class under test."""
    return CALCULATOR_SOURCE


@pytest.fixture
def passing_runner():
    """Return a runner that compiles and passes everything."""
    return ScriptedRunner()


@pytest.fixture
def loop_config():
    """Return a LoopConfig with a small, fixed budget."""
    return LoopConfig(max_iterations=3)


@pytest.fixture
def test_config():
    """Return an AgentConfig with dummy keys (no environment needed)."""
    return AgentConfig(
        gemini_api_key="test-key",
        deepseek_api_key="test-key",
        llm=LLMConfig(provider="gemini", gemini_model="gemini-2.5-flash"),
        runner=RunnerConfig(timeout_seconds=30),
        loop=LoopConfig(max_iterations=3),
    )


@pytest.fixture
def artifact_path(tmp_path):
    """Return a not-yet-existing test file path inside a temp project."""
    return tmp_path / "src" / "test" / "kotlin" / "com" / "example" / "CalculatorTest.kt"
