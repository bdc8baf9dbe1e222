"""Clean-up of model answers before display."""

from __future__ import annotations

import re

# [doc1], [doc12] are reference tags added by the retrieval extension.
# Spaces in front of a tag go with it, so "dusk [doc1]." reads "dusk.".
_CITATION_RE = re.compile(r"[ \t]*\[doc\d+\]", re.IGNORECASE)
_HSPACE_RE = re.compile(r"[ \t\u00a0]+")
_SPACE_AROUND_NEWLINE_RE = re.compile(r" *\n *")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def strip_citations(text: str) -> str:
    return _CITATION_RE.sub("", text)


def collapse_whitespace(text: str) -> str:
    """Collapse runs of spaces/tabs, keeping line structure."""
    s = _HSPACE_RE.sub(" ", text)
    s = _SPACE_AROUND_NEWLINE_RE.sub("\n", s)
    s = _BLANK_LINES_RE.sub("\n\n", s)
    return s.strip()


def clean_answer(text: str) -> str:
    """Strip citation markers and redundant whitespace from an answer."""
    return collapse_whitespace(strip_citations(text))
