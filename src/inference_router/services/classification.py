"""
Request classification policy.

The routing engine asks a policy ``is_simple(prompt, context)`` whether a
request is light enough for a local model.  ``KeywordLengthPolicy`` is the
default heuristic; any callable with the same signature can replace it.
"""

from __future__ import annotations

from typing import Callable, FrozenSet, Iterable, Optional

from .models import Category, RequestContext

SimplePolicy = Callable[[str, RequestContext], bool]

SIMPLE_OPERATIONS = frozenset(
    {"classification", "extraction", "simple_questions", "routine_tasks"}
)
SIMPLE_KEYWORDS = ("extract", "classify", "list", "identify", "find", "parse")


class KeywordLengthPolicy:
    """
    Simple if any of:
    - the operation is a known simple operation
    - the prompt contains a simple-task keyword
    - the prompt is shorter than ``short_prompt_chars``
    - the category is routine
    """

    def __init__(
        self,
        short_prompt_chars: int = 120,
        operations: Optional[Iterable[str]] = None,
        keywords: Optional[Iterable[str]] = None,
    ):
        self.short_prompt_chars = short_prompt_chars
        self.operations: FrozenSet[str] = (
            frozenset(operations) if operations is not None else SIMPLE_OPERATIONS
        )
        self.keywords = tuple(keywords) if keywords is not None else SIMPLE_KEYWORDS

    def __call__(self, prompt: str, context: RequestContext) -> bool:
        if context.operation in self.operations:
            return True
        prompt_lower = prompt.lower()
        if any(kw in prompt_lower for kw in self.keywords):
            return True
        if len(prompt) < self.short_prompt_chars:
            return True
        return context.category is Category.ROUTINE
