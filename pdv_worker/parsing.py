"""
Pure text parsing helpers for model output.

Grammar handled by ``parse_markdown`` (one block per line):
  heading   ``#``, ``##`` or ``###`` followed by text
  bullet    ``-`` or ``*`` followed by whitespace
  numbered  digits followed by ``.`` and whitespace
  paragraph anything else; blank lines separate paragraphs
Inline spans, matched left to right in this priority order:
  ``**bold**``, ``__bold__``, ``*italic*``, ``_italic_``, ```code```
"""
import html
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_BRACE_SPAN = re.compile(r"\{[\s\S]*\}")
_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*(?:%|percent\b)", re.IGNORECASE)


def extract_json(text: str) -> str:
    """
    Pull a JSON document out of a model response.

    A fenced code block wins; otherwise the span from the first ``{`` to the
    last ``}``; otherwise the trimmed text itself.
    """
    if text is None:
        return ""
    fenced = _FENCED_BLOCK.search(text)
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()
    span = _BRACE_SPAN.search(text)
    if span:
        return span.group(0).strip()
    return text.strip()


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object embedded in ``text`` or None when there is none."""
    try:
        value = json.loads(extract_json(text))
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, dict) else None


def extract_percentage(text: Optional[str]) -> Optional[float]:
    """First number directly before ``%`` or ``percent``, clamped to [0, 100]."""
    if not text:
        return None
    match = _PERCENT.search(text)
    if not match:
        return None
    value = float(match.group(1))
    return max(0.0, min(100.0, value))


# ── Markdown ─────────────────────────────────────────────────────────────────

@dataclass
class TextSegment:
    text: str
    bold: bool = False
    italic: bool = False
    code: bool = False


@dataclass
class MarkdownBlock:
    kind: str  # heading | bullet | numbered | paragraph
    segments: List[TextSegment] = field(default_factory=list)
    level: int = 0
    marker: str = ""

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.segments)


_INLINE_PATTERNS = [
    (re.compile(r"^(.*?)\*\*(.+?)\*\*"), {"bold": True}),
    (re.compile(r"^(.*?)__(.+?)__"), {"bold": True}),
    (re.compile(r"^(.*?)\*(.+?)\*"), {"italic": True}),
    (re.compile(r"^(.*?)_(.+?)_"), {"italic": True}),
    (re.compile(r"^(.*?)`(.+?)`"), {"code": True}),
]

_HEADING = re.compile(r"^(#{1,3})\s*(.*)$")
_BULLET = re.compile(r"^\s*[-*]\s+(.*)$")
_NUMBERED = re.compile(r"^\s*(\d+\.)\s+(.*)$")


def parse_inline(text: str) -> List[TextSegment]:
    segments: List[TextSegment] = []
    remaining = text
    while remaining:
        for pattern, style in _INLINE_PATTERNS:
            match = pattern.match(remaining)
            if match:
                if match.group(1):
                    segments.append(TextSegment(match.group(1)))
                segments.append(TextSegment(match.group(2), **style))
                remaining = remaining[match.end():]
                break
        else:
            segments.append(TextSegment(remaining))
            break
    return segments or [TextSegment(text)]


def parse_markdown(text: Optional[str]) -> List[MarkdownBlock]:
    blocks: List[MarkdownBlock] = []
    paragraph: List[str] = []

    def flush():
        if paragraph:
            blocks.append(MarkdownBlock("paragraph", parse_inline(" ".join(paragraph))))
            paragraph.clear()

    for raw_line in (text or "").splitlines():
        line = raw_line.rstrip()
        if not line.strip():
            flush()
            continue
        heading = _HEADING.match(line.strip())
        if heading:
            flush()
            blocks.append(MarkdownBlock("heading", parse_inline(heading.group(2)), level=len(heading.group(1))))
            continue
        bullet = _BULLET.match(line)
        if bullet:
            flush()
            blocks.append(MarkdownBlock("bullet", parse_inline(bullet.group(1)), marker="•"))
            continue
        numbered = _NUMBERED.match(line)
        if numbered:
            flush()
            blocks.append(MarkdownBlock("numbered", parse_inline(numbered.group(2)), marker=numbered.group(1)))
            continue
        paragraph.append(line.strip())
    flush()
    return blocks


def _segments_to_html(segments: List[TextSegment]) -> str:
    parts = []
    for seg in segments:
        chunk = html.escape(seg.text)
        if seg.code:
            chunk = f"<code>{chunk}</code>"
        if seg.italic:
            chunk = f"<em>{chunk}</em>"
        if seg.bold:
            chunk = f"<strong>{chunk}</strong>"
        parts.append(chunk)
    return "".join(parts)


def markdown_to_html(text: Optional[str]) -> str:
    out: List[str] = []
    open_list: Optional[str] = None
    for block in parse_markdown(text):
        wanted = {"bullet": "ul", "numbered": "ol"}.get(block.kind)
        if open_list and open_list != wanted:
            out.append(f"</{open_list}>")
            open_list = None
        if wanted and open_list is None:
            out.append(f"<{wanted}>")
            open_list = wanted
        body = _segments_to_html(block.segments)
        if block.kind == "heading":
            level = min(block.level + 1, 4)
            out.append(f"<h{level}>{body}</h{level}>")
        elif wanted:
            out.append(f"<li>{body}</li>")
        else:
            out.append(f"<p>{body}</p>")
    if open_list:
        out.append(f"</{open_list}>")
    return "\n".join(out)


def markdown_to_text(text: Optional[str]) -> str:
    lines = []
    for block in parse_markdown(text):
        if block.kind == "heading":
            lines.append(block.text.upper())
        elif block.kind in ("bullet", "numbered"):
            lines.append(f"{'-' if block.kind == 'bullet' else block.marker} {block.text}")
        else:
            lines.append(block.text)
    return "\n".join(lines)
