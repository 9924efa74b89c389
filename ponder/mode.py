"""Decide per message whether to run the reasoning loop or answer in one shot."""

import logging
import re

logger = logging.getLogger(__name__)

TOOL_CALL = re.compile(r"\b(Read|Glob|Grep|Bash|Write|Edit)\s*\(", re.IGNORECASE)

ACTION_KEYWORDS = (
    # investigation
    "analyze",
    "investigation",
    "explore",
    "examine",
    "inspect",
    "review",
    # search
    "search",
    "find",
    "locate",
    "look for",
    "discover",
    # problem solving
    "debug",
    "troubleshoot",
    "diagnose",
    "fix",
    "solve",
    "resolve",
    # development
    "implement",
    "create",
    "build",
    "develop",
    "code",
    "write",
    "refactor",
    "optimize",
    "improve",
    "enhance",
    "update",
    # understanding
    "understand",
    "explain",
    "show me",
    "help with",
    "work on",
)

FILE_KEYWORDS = (
    "file",
    "files",
    "directory",
    "folder",
    "path",
    "code",
    "function",
    "class",
    "method",
    "variable",
    "project",
    "repository",
    "codebase",
    "source",
)

COMPLEX_KEYWORDS = (
    "step by step",
    "how to",
    "guide me",
    "walk through",
    "process",
    "workflow",
    "procedure",
)

SIMPLE_PATTERNS = (
    re.compile(r"^(hi|hello|hey|thanks|thank you|ok|okay|yes|no)$", re.IGNORECASE),
    re.compile(r"^what is", re.IGNORECASE),
    re.compile(r"^who is", re.IGNORECASE),
    re.compile(r"^when is", re.IGNORECASE),
    re.compile(r"^where is", re.IGNORECASE),
)


def _contains_any(text: str, keywords) -> bool:
    return any(k in text for k in keywords)


def classify(message: str) -> bool:
    """Return True when *message* calls for multi-step tool use."""
    text = message.strip()
    if TOOL_CALL.search(text):
        return True
    if any(p.search(text) for p in SIMPLE_PATTERNS):
        return False

    lowered = text.lower()
    has_action = _contains_any(lowered, ACTION_KEYWORDS)
    has_file = _contains_any(lowered, FILE_KEYWORDS)
    has_complex = _contains_any(lowered, COMPLEX_KEYWORDS)
    is_complex_message = len(text) > 50 and ("?" in text or len(text.split()) > 10)

    return (
        (has_action and has_file)
        or (has_action and has_complex)
        or (has_file and is_complex_message)
        or has_complex
    )


class ModeSelector:
    """Memoizing wrapper around ``classify``.

    The memo is keyed by the lower-cased, trimmed message and is cleared
    wholesale once it grows past *cache_size*.
    """

    def __init__(self, cache_size: int = 100):
        self.cache_size = cache_size
        self._cache: dict[str, bool] = {}

    def needs_reasoning(self, message: str) -> bool:
        key = message.strip().lower()
        if key in self._cache:
            return self._cache[key]
        decision = classify(message)
        if len(self._cache) >= self.cache_size:
            self._cache.clear()
        self._cache[key] = decision
        logger.debug("mode for %r: %s", key[:80], "react" if decision else "direct")
        return decision

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
