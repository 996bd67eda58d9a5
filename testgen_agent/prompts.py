"""
Prompts
=======
Prompt text for the initial generation and for each repair round.
"""

from testgen_agent.source_info import make_test_class_name

SYSTEM_INSTRUCTION = (
    "You are an expert Kotlin engineer who writes JUnit 5 unit tests. "
    "Reply with Kotlin source code only: no markdown, no explanations."
)

_RESULT_TYPE_RULES = """\
- For Result<T> values use getOrThrow() to obtain the value in assertions.
- getOrNull() returns a nullable type: never pass it directly to
  assertEquals/assertTrue/assertFalse.
- Use assertThrows<ExceptionType> { ... } for expected exceptions.
- Pass a delta to assertEquals when comparing Double or Float values."""


def build_initial_prompt(request) -> str:
    """Prompt asking for a first set of tests.

    Args:
        request: ``GenerationRequest`` without prior attempt/diagnostics.
    """
    test_name = make_test_class_name(request.target_name)
    return f"""Write a complete JUnit 5 test suite for the following Kotlin class.

Source file: {request.source_identifier}
Class under test: {request.target_name}
Package: {request.package_name}

Source code:
```kotlin
{request.source_code}
```

Requirements:
- Start the reply with: package {request.package_name}
- Use JUnit 5 (import org.junit.jupiter.api.Test and friends); kotlin.test
  assertions are allowed where convenient.
- Name the test class {test_name}.
- Import the class under test: import {request.package_name}.{request.target_name}
- Cover every public method and property: typical cases, edge cases,
  invalid input and exceptions.
- Use @Test, and @BeforeEach/@AfterEach where needed.
- Use descriptive backtick test names: `method should behavior when condition`.
- Add every import the tests need.
{_RESULT_TYPE_RULES}

Return only Kotlin code starting with the package declaration.
"""


def build_repair_prompt(request) -> str:
    """Prompt asking the model to fix its previous attempt.

    Args:
        request: ``GenerationRequest`` carrying ``prior_attempt`` and
            ``prior_diagnostics``.
    """
    return f"""Fix the errors in these Kotlin JUnit 5 tests.

Source file: {request.source_identifier}
Class under test: {request.target_name}
Package: {request.package_name}

Source code of the class:
```kotlin
{request.source_code}
```

Current tests (with errors):
```kotlin
{request.prior_attempt or ""}
```

Errors reported by validation, compilation or the test run:
```
{request.prior_diagnostics or "No diagnostics available."}
```

Fix ALL of the errors:
- Read the errors carefully and correct the package declaration and imports.
- Fix Kotlin syntax, types, method and constructor calls.
- Fix assertions so they use the right methods and types.
- Make sure every public method of {request.target_name} stays covered.
- If an error says "actual type is 'Type?', but 'Type' was expected",
  fix the nullable type.
{_RESULT_TYPE_RULES}

Start the reply with: package {request.package_name}
Return only Kotlin code, no markdown.
"""


def build_prompt(request) -> str:
    """Initial or repair prompt, depending on *request*."""
    if request.is_repair:
        return build_repair_prompt(request)
    return build_initial_prompt(request)
