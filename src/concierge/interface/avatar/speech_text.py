"""Markdown → plain speech text for the avatar voice.

The display text may carry markdown; the synthesizer should hear plain
sentences.  Links are spoken as ``"<text> at <url>"``, everything else
keeps its words and loses its markup.
"""

from __future__ import annotations

import re

_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")
_CODE_FENCE_RE = re.compile(r"^[ \t]*(```|~~~)[^\n]*\n?", re.MULTILINE)
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_HEADING_RE = re.compile(r"^[ \t]{0,3}#{1,6}[ \t]*", re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^[ \t]{0,3}>[ \t]?", re.MULTILINE)
_BULLET_RE = re.compile(r"^[ \t]*[-*+][ \t]+", re.MULTILINE)
_NUMBERED_RE = re.compile(r"^[ \t]*\d+[.)][ \t]+", re.MULTILINE)
_HRULE_RE = re.compile(r"^[ \t]*([-*_])([ \t]*\1){2,}[ \t]*$", re.MULTILINE)
_TABLE_RULE_RE = re.compile(
    r"^[ \t]*\|?[ \t]*:?-{3,}:?[ \t]*(\|[ \t]*:?-{3,}:?[ \t]*)*\|?[ \t]*$", re.MULTILINE
)
_STRONG_RE = re.compile(r"(\*\*|__)(.+?)\1")
_EMPHASIS_RE = re.compile(r"(?<![\w*])([*_])(?!\s)(.+?)(?<!\s)\1(?![\w*])")
_STRIKE_RE = re.compile(r"~~(.+?)~~")
_HTML_TAG_RE = re.compile(r"</?[A-Za-z][^>]*>")
_PIPE_RE = re.compile(r"\s*\|\s*")


def markdown_to_speech_text(markdown: str) -> str:
    """Convert markdown display text into plain text for synthesis."""
    s = _IMAGE_RE.sub(r"\1", markdown)
    s = _LINK_RE.sub(r"\1 at \2", s)
    s = _CODE_FENCE_RE.sub("", s)
    s = _INLINE_CODE_RE.sub(r"\1", s)
    s = _TABLE_RULE_RE.sub("", s)
    s = _HRULE_RE.sub("", s)
    s = _HEADING_RE.sub("", s)
    s = _BLOCKQUOTE_RE.sub("", s)
    s = _BULLET_RE.sub("", s)
    s = _NUMBERED_RE.sub("", s)
    s = _STRONG_RE.sub(r"\2", s)
    s = _EMPHASIS_RE.sub(r"\2", s)
    s = _STRIKE_RE.sub(r"\1", s)
    s = _HTML_TAG_RE.sub("", s)

    lines = []
    for line in s.splitlines():
        if "|" in line:
            line = _PIPE_RE.sub(", ", line.strip().strip("|"))
        lines.append(re.sub(r"[ \t]{2,}", " ", line).strip())
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()
