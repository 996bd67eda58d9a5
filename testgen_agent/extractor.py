"""
Code Extractor
==============
Strips LLM chatter and markdown fences from a generation, leaving the
source code.

Extraction is an ordered list of pure strategy functions.  Each takes the
raw text and returns the extracted code or ``None``; the first non-``None``
result wins.  After fence handling, blank edge lines are trimmed and, if
the text still does not look like Kotlin, everything before the first
declaration line is dropped.
"""

import logging
import re
from typing import Callable, List, Optional, Sequence, Tuple

logger = logging.getLogger("testgen_agent.extractor")

FENCE = "```"

# Any of these anywhere in the text means "this already looks like source"
SOURCE_MARKERS = ("package ", "class ", "fun ")

# A line starting with one of these begins the code proper
DECLARATION_PREFIXES = ("package ", "import ", "class ", "object ", "@file:")

Strategy = Callable[[str], Optional[str]]


def _tags_pattern(tags: Sequence[str]) -> str:
    return "(?:" + "|".join(re.escape(t) for t in tags) + ")"


def tagged_fence_strategy(tags: Sequence[str]) -> Strategy:
    """Fenced block explicitly tagged with the target language."""
    pattern = re.compile(
        FENCE + _tags_pattern(tags) + r"[ \t]*\n(.*?)\n[ \t]*" + FENCE,
        re.DOTALL | re.IGNORECASE,
    )

    def strategy(text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group(1).strip() if match else None

    strategy.__name__ = "tagged_fence"
    return strategy


def untagged_fence(text: str) -> Optional[str]:
    """Any fenced block without a language tag."""
    match = re.search(FENCE + r"[ \t]*\n(.*?)\n[ \t]*" + FENCE, text, re.DOTALL)
    return match.group(1).strip() if match else None


def loose_fence_strategy(tags: Sequence[str]) -> Strategy:
    """Tagged block whose newlines around the fences may be missing."""
    pattern = re.compile(
        FENCE + _tags_pattern(tags) + r"([^`]*)" + FENCE,
        re.DOTALL | re.IGNORECASE,
    )

    def strategy(text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group(1).strip() if match else None

    strategy.__name__ = "loose_fence"
    return strategy


def strip_fences_strategy(tags: Sequence[str]) -> Strategy:
    """Fences present but unmatched: drop every fence marker and tag."""
    pattern = re.compile(
        FENCE + r"(?:" + _tags_pattern(tags) + r"\b|[\w+-]*)",
        re.IGNORECASE,
    )

    def strategy(text: str) -> Optional[str]:
        if FENCE not in text:
            return None
        return pattern.sub("", text).strip()

    strategy.__name__ = "strip_fences"
    return strategy


def plain_text(text: str) -> Optional[str]:
    """No fences at all: the text itself."""
    return text.strip()


def trim_blank_lines(text: str) -> str:
    """Remove leading and trailing blank lines, keeping inner layout."""
    lines = text.split("\n")
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines)


def looks_like_source(text: str) -> bool:
    return any(marker in text for marker in SOURCE_MARKERS)


def drop_leading_chatter(text: str) -> str:
    """Drop every line before the first declaration line, if there is one."""
    lines = text.split("\n")
    for index, line in enumerate(lines):
        if line.strip().startswith(DECLARATION_PREFIXES):
            if index:
                logger.debug("Dropped %d leading non-code lines", index)
            return "\n".join(lines[index:])
    return text


class CodeExtractor:
    """Ordered chain of extraction strategies.

    Args:
        language_tags: Fence tags accepted for the target language; the
            first is the canonical one.
    """

    def __init__(self, language_tags: Sequence[str] = ("kotlin", "kt")):
        self.language_tags = tuple(language_tags)
        self.strategies: List[Strategy] = [
            tagged_fence_strategy(self.language_tags),
            untagged_fence,
            loose_fence_strategy(self.language_tags),
            strip_fences_strategy(self.language_tags),
            plain_text,
        ]

    def extract(self, raw_text: str) -> str:
        """Return the best-effort source code contained in *raw_text*.

        Never raises.  When nothing source-like is found the cleaned text
        is returned as-is and the validator is expected to reject it.
        """
        return self.extract_with_strategy(raw_text)[0]

    def extract_with_strategy(self, raw_text: str) -> Tuple[str, str]:
        """Like :meth:`extract`, also returning the winning strategy name."""
        text = raw_text or ""
        cleaned = text.strip()
        used = "none"

        for strategy in self.strategies:
            result = strategy(text)
            if result is not None:
                cleaned = result
                used = strategy.__name__
                break

        cleaned = trim_blank_lines(cleaned)

        if not looks_like_source(cleaned):
            cleaned = drop_leading_chatter(cleaned)

        logger.debug("Extracted %d chars via %s", len(cleaned), used)
        return cleaned, used


_default_extractor = CodeExtractor()


def extract(raw_text: str) -> str:
    """Extract Kotlin source from *raw_text* with the default tags."""
    return _default_extractor.extract(raw_text)
