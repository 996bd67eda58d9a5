"""
Static Validator
================
Line-oriented checks on generated Kotlin JUnit 5 test code.

This is advisory linting, not a compiler -- it catches the most common
generation mistakes cheaply, before Gradle is invoked.  Structural checks
(package, class, ``@Test``, JUnit imports) and brace/parenthesis balance
are exact; the anti-pattern table may over- or under-flag.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

logger = logging.getLogger("testgen_agent.validator")

PACKAGE_RE = re.compile(r"^\s*package\s+([A-Za-z_][A-Za-z0-9_.]*)", re.MULTILINE)
TYPE_DECLARATION_RE = re.compile(r"\b(?:class|object)\s+[A-Za-z_]")
TEST_ANNOTATION_RE = re.compile(r"@Test\b")
JUNIT_IMPORT_RE = re.compile(r"^\s*import\s+org\.junit\.jupiter\.api\b", re.MULTILINE)
FUN_RE = re.compile(r"\bfun\s")

_ASSERTION_RE = r"\bassert(?:Equals|NotEquals|True|False|Same|NotSame)\s*\("


@dataclass(frozen=True)
class AntiPattern:
    """A regex for a known error-prone idiom.

    Attributes:
        name: Short identifier.
        pattern: Regex applied to each code line.
        message: Defect text (the line number is prepended).
    """

    name: str
    pattern: "re.Pattern[str]"
    message: str

    def matches(self, line: str) -> bool:
        return bool(self.pattern.search(line))


DEFAULT_ANTI_PATTERNS: Sequence[AntiPattern] = (
    AntiPattern(
        name="get_or_null_in_assertion",
        pattern=re.compile(_ASSERTION_RE + r".*\.getOrNull\(\)"),
        message=(
            "getOrNull() returns a nullable type inside an assertion; "
            "use getOrThrow() or check for null first"
        ),
    ),
    AntiPattern(
        name="nullable_numeric_in_assertion",
        pattern=re.compile(
            _ASSERTION_RE + r".*\b(?:Double|Float|Int|Long|Short|Byte)\?"
        ),
        message=(
            "Nullable numeric type used where the non-null type is "
            "expected (e.g. Double? vs Double)"
        ),
    ),
    AntiPattern(
        name="non_reified_assert_throws",
        pattern=re.compile(r"\bassertThrows\s*\("),
        message="Incorrect assertThrows syntax, use assertThrows<ExceptionType> { ... }",
    ),
)

_DOUBLE_WITHOUT_DELTA_RE = re.compile(r"\bassertEquals\s*\(.*\b(?:Double|Float)\b")


@dataclass
class ValidationOutcome:
    """Result of a static validation pass.

    Attributes:
        passed: ``True`` iff ``defects`` is empty.
        defects: Ordered defect descriptions.
        warnings: Advisory findings that do not affect ``passed``.
    """

    passed: bool
    defects: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def as_diagnostics(self) -> str:
        """Defects joined one per line, for the repair prompt."""
        return "\n".join(self.defects)


def _is_comment_line(stripped: str) -> bool:
    return stripped.startswith(("//", "/*", "*"))


class StaticValidator:
    """Validates generated Kotlin JUnit 5 test sources.

    Args:
        anti_patterns: Table of line-level anti-patterns.  Defaults to
            :data:`DEFAULT_ANTI_PATTERNS`.
    """

    def __init__(self, anti_patterns: Optional[Sequence[AntiPattern]] = None):
        self.anti_patterns = tuple(
            DEFAULT_ANTI_PATTERNS if anti_patterns is None else anti_patterns
        )

    def validate(self, code: str, expected_package: str = "") -> ValidationOutcome:
        """Run every check on *code*.

        Args:
            code: Kotlin source text.
            expected_package: Package the test must declare.  Empty skips
                the mismatch check (presence is still required).

        Returns:
            :class:`ValidationOutcome`.
        """
        defects: List[str] = []
        warnings: List[str] = []

        defects.extend(self._check_structure(code, expected_package))

        brace_balance, paren_balance, line_defects, line_warnings = (
            self._scan_lines(code)
        )
        defects.extend(line_defects)
        warnings.extend(line_warnings)

        if brace_balance != 0:
            defects.append(
                f"Unbalanced braces in code ({self._describe_balance(brace_balance, '{', '}')})"
            )
        if paren_balance != 0:
            defects.append(
                f"Unbalanced parentheses in code ({self._describe_balance(paren_balance, '(', ')')})"
            )

        if defects:
            logger.debug("Validation found %d defects", len(defects))

        return ValidationOutcome(
            passed=not defects,
            defects=defects,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_structure(code: str, expected_package: str) -> List[str]:
        defects: List[str] = []

        package_match = PACKAGE_RE.search(code)
        if not package_match:
            defects.append("Missing package declaration")
        elif expected_package and package_match.group(1) != expected_package:
            defects.append(
                f"Package declaration '{package_match.group(1)}' does not "
                f"match expected package '{expected_package}'"
            )

        if not TYPE_DECLARATION_RE.search(code):
            defects.append("No class or object declaration found")

        has_test = bool(TEST_ANNOTATION_RE.search(code))
        if not has_test:
            defects.append("No test methods found (missing @Test annotations)")

        if not JUNIT_IMPORT_RE.search(code):
            defects.append("Missing JUnit 5 imports (org.junit.jupiter.api)")

        if has_test and not FUN_RE.search(code):
            defects.append("Test annotations found but no test functions")

        return defects

    def _scan_lines(self, code: str):
        """Count brace/paren balance and apply the anti-pattern table.

        Blank lines and comment lines (``//``, ``/*``, ``*``) are skipped.

        Returns:
            Tuple of ``(brace_balance, paren_balance, defects, warnings)``.
        """
        brace_balance = 0
        paren_balance = 0
        defects: List[str] = []
        warnings: List[str] = []

        for number, line in enumerate(code.split("\n"), 1):
            stripped = line.strip()
            if not stripped or _is_comment_line(stripped):
                continue

            brace_balance += stripped.count("{") - stripped.count("}")
            paren_balance += stripped.count("(") - stripped.count(")")

            for anti_pattern in self.anti_patterns:
                if anti_pattern.matches(stripped):
                    defects.append(f"Line {number}: {anti_pattern.message}")

            if (
                _DOUBLE_WITHOUT_DELTA_RE.search(stripped)
                and "delta" not in stripped
                and not re.search(r",\s*[0-9.eE-]+\s*\)\s*$", stripped)
            ):
                warnings.append(
                    f"Line {number}: Consider using a delta for floating-point assertions"
                )

        return brace_balance, paren_balance, defects, warnings

    @staticmethod
    def _describe_balance(balance: int, open_char: str, close_char: str) -> str:
        if balance > 0:
            return f"{balance} unclosed '{open_char}'"
        return f"{-balance} unmatched '{close_char}'"


def validate(code: str, expected_package: str = "") -> ValidationOutcome:
    """Validate *code* with the default anti-pattern table."""
    return StaticValidator().validate(code, expected_package)
