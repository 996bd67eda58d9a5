"""
Error Taxonomy
==============
Exceptions raised by the agent's components.

Recoverable stage failures (validation defects, failing builds, failing
tests) are *not* exceptions -- they come back as structured outcomes.
Exceptions are reserved for conditions the repair loop cannot fix by
asking the LLM again, or for LLM calls that produced nothing usable.
"""

from typing import Optional


class TestGenError(Exception):
    """Base class for all agent errors."""

    __test__ = False  # keep pytest from collecting this as a test class


class ConfigurationError(TestGenError):
    """A required setting (usually an API key) is missing or invalid."""
    pass


class OperationCancelled(TestGenError):
    """The caller cancelled the run or its deadline elapsed."""
    pass


# ---------------------------------------------------------------------------
# LLM layer
# ---------------------------------------------------------------------------

class LLMError(TestGenError):
    """Base class for failures of a single LLM generation call."""
    pass


class TransportError(LLMError):
    """The provider could not be reached or answered with a non-2xx status.

    Attributes:
        status_code: HTTP status, or ``None`` for network-level failures.
        body: Raw response body (may be empty).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ContentBlockedError(LLMError):
    """The provider refused to return content (safety, recitation, ...)."""

    def __init__(self, message: str, reason: str = ""):
        super().__init__(message)
        self.reason = reason


class MalformedResponseError(LLMError):
    """The response held no extractable text."""
    pass


# ---------------------------------------------------------------------------
# Runner layer
# ---------------------------------------------------------------------------

class RunnerError(TestGenError):
    """Base class for build/test runner failures that abort the run."""
    pass


class ToolNotFoundError(RunnerError):
    """Neither a Gradle wrapper nor a ``gradle`` executable could be found."""
    pass
