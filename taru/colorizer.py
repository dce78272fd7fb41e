"""Streaming SGR colorizer: 청크 단위 바이트 → 스타일 세그먼트

Terminal output arrives in arbitrary chunks. ``feed`` scans each chunk once,
splitting plain text from ``ESC [ <digits> <final>`` control sequences, and
threads everything that must survive a chunk boundary through an explicit
``ColorizerState``: the active style, an unfinished escape sequence and the
UTF-8 decoder's buffered bytes. Feeding the chunks of a stream one by one
yields the same styled text as feeding their concatenation.

Only the subset needed for 8 colors, bold and reset is understood. Any other
complete sequence is consumed without effect.
"""

from __future__ import annotations

import codecs

from pydantic import BaseModel, ConfigDict

ESC = 0x1B
CSI = 0x5B  # "["
SGR = 0x6D  # "m"

DEFAULT_COLOR = 7

# [bold][color] → CSS color. Bold row uses the bright variants.
PALETTE: tuple[tuple[str, ...], tuple[str, ...]] = (
    ("#000000", "#cd0000", "#00cd00", "#cdcd00", "#0000ee", "#cd00cd", "#00cdcd", "#e5e5e5"),
    ("#7f7f7f", "#ff0000", "#00ff00", "#ffff00", "#5c5cff", "#ff00ff", "#00ffff", "#ffffff"),
)


class ColorizerState(BaseModel):
    model_config = ConfigDict(frozen=True)

    color: int = DEFAULT_COLOR
    bold: bool = False
    pending: bytes = b""  # unfinished escape sequence, never shown as text
    undecoded: bytes = b""  # trailing bytes of a split UTF-8 character


class StyledSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    bold: bool = False
    color: int = DEFAULT_COLOR

    @property
    def css_color(self) -> str:
        return resolve_color(self.bold, self.color)

    def same_style(self, other: StyledSegment) -> bool:
        return self.bold == other.bold and self.color == other.color


def resolve_color(bold: bool, color: int) -> str:
    return PALETTE[1 if bold else 0][color]


def _decoder(state: ColorizerState) -> codecs.IncrementalDecoder:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    decoder.setstate((state.undecoded, 0))
    return decoder


def _apply_sgr(param: int, color: int, bold: bool) -> tuple[int, bool] | None:
    """Return the new (color, bold) or None when the parameter is ignored."""
    if param == 0:
        return DEFAULT_COLOR, False
    if param == 1:
        return color, True
    if 30 <= param <= 37:
        return param - 30, bold
    return None


def feed(state: ColorizerState, chunk: bytes) -> tuple[ColorizerState, list[StyledSegment]]:
    """Consume one chunk and return the next state plus finished segments."""
    data = state.pending + chunk
    decoder = _decoder(state)
    color, bold = state.color, state.bold
    segments: list[StyledSegment] = []
    text: list[str] = []
    pending = b""

    def flush() -> None:
        joined = "".join(text)
        if joined:
            segments.append(StyledSegment(text=joined, bold=bold, color=color))
        text.clear()

    i = 0
    n = len(data)
    while i < n:
        esc = data.find(ESC, i)
        if esc < 0:
            text.append(decoder.decode(data[i:]))
            break
        if esc > i:
            text.append(decoder.decode(data[i:esc]))
        if decoder.getstate()[0]:
            # ESC cuts off a partial character under the style before it
            text.append(decoder.decode(b"", final=True))
            decoder.reset()

        j = esc + 1
        if j >= n:
            pending = data[esc:]
            break
        if data[j] != CSI:
            # not a CSI sequence: drop ESC and the byte after it
            i = j + 1
            continue

        j += 1
        param = 0
        while j < n and 0x30 <= data[j] <= 0x39:
            param = param * 10 + (data[j] - 0x30)
            j += 1
        if j >= n:
            pending = data[esc:]
            break

        if data[j] == SGR:
            style = _apply_sgr(param, color, bold)
            if style is not None:
                flush()
                color, bold = style
        i = j + 1

    flush()
    undecoded = decoder.getstate()[0]
    return ColorizerState(color=color, bold=bold, pending=pending, undecoded=undecoded), segments


def finish(state: ColorizerState) -> list[StyledSegment]:
    """End of stream: flush the decoder, drop any unfinished escape sequence."""
    tail = _decoder(state).decode(b"", final=True)
    if not tail:
        return []
    return [StyledSegment(text=tail, bold=state.bold, color=state.color)]


def coalesce(segments: list[StyledSegment]) -> list[StyledSegment]:
    """Merge neighbouring segments that share a style."""
    merged: list[StyledSegment] = []
    for seg in segments:
        if not seg.text:
            continue
        if merged and merged[-1].same_style(seg):
            merged[-1] = StyledSegment(text=merged[-1].text + seg.text, bold=seg.bold, color=seg.color)
        else:
            merged.append(seg)
    return merged


def colorize(data: bytes) -> list[StyledSegment]:
    state, segments = feed(ColorizerState(), data)
    return segments + finish(state)
