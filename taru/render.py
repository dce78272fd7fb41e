"""Styled segment → HTML / ANSI 렌더링"""

from __future__ import annotations

import html

from taru.colorizer import DEFAULT_COLOR, StyledSegment, coalesce

OUTPUT_BACKGROUND = "#1b1d1e"


def segment_to_html(seg: StyledSegment) -> str:
    weight = "font-weight:700;" if seg.bold else ""
    return f'<span style="color:{seg.css_color};{weight}">{html.escape(seg.text)}</span>'


def render_html(segments: list[StyledSegment]) -> str:
    """One flat <span> per style run. Spans are never nested."""
    body = "".join(segment_to_html(s) for s in coalesce(segments))
    return f'<pre class="output" style="background:{OUTPUT_BACKGROUND};">{body}</pre>'


def render_ansi(segments: list[StyledSegment]) -> str:
    """Re-encode segments for a local terminal."""
    parts: list[str] = []
    for seg in segments:
        if seg.bold:
            parts.append(f"\x1b[0;1;{30 + seg.color}m")
        elif seg.color != DEFAULT_COLOR:
            parts.append(f"\x1b[0;{30 + seg.color}m")
        else:
            parts.append("\x1b[0m")
        parts.append(seg.text)
    if parts:
        parts.append("\x1b[0m")
    return "".join(parts)
