"""
Source Introspection
====================
Helpers that derive the test target from a Kotlin source file: its
package, the class under test, and the default test file location.
"""

import re
from pathlib import Path

PACKAGE_RE = re.compile(r"package\s+([a-zA-Z_][a-zA-Z0-9_.]*)")
CLASS_RE = re.compile(r"(?:class|object)\s+([a-zA-Z_][a-zA-Z0-9_]*)")

DEFAULT_PACKAGE = "com.example"
DEFAULT_CLASS = "UnknownClass"


def detect_package_name(source_code: str, default: str = DEFAULT_PACKAGE) -> str:
    """Return the package declared in *source_code*, or *default*."""
    match = PACKAGE_RE.search(source_code)
    return match.group(1) if match else default


def extract_class_name(source_code: str) -> str:
    """Return the first ``class``/``object`` name in *source_code*."""
    match = CLASS_RE.search(source_code)
    return match.group(1) if match else DEFAULT_CLASS


def make_test_class_name(class_name: str) -> str:
    """``Calculator`` -> ``CalculatorTest`` (unchanged if already suffixed)."""
    return class_name if class_name.endswith("Test") else f"{class_name}Test"


def qualified_test_name(class_name: str, package_name: str) -> str:
    """Fully qualified test class name for ``gradle test --tests``."""
    name = make_test_class_name(class_name)
    return f"{package_name}.{name}" if package_name else name


def default_test_path(source_path: str) -> str:
    """``src/Foo.kt`` -> ``src/FooTest.kt``."""
    source = Path(source_path)
    return str(source.parent / f"{source.stem}Test.kt")

