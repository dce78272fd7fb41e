"""Streaming colorizer tests"""

from __future__ import annotations

import pytest

from taru.colorizer import (
    DEFAULT_COLOR,
    ColorizerState,
    StyledSegment,
    coalesce,
    colorize,
    feed,
    finish,
    resolve_color,
)

SAMPLE = b"a\x1b[31mb\x1b[1mc\x1b[0md"
MIXED = "plain \x1b[32mgrün \x1b[1m한글\x1b[0m done\n\x1b[34m✓ ok\x1b[m".encode()


def _run(chunks: list[bytes]) -> list[StyledSegment]:
    state = ColorizerState()
    out: list[StyledSegment] = []
    for chunk in chunks:
        state, segments = feed(state, chunk)
        out.extend(segments)
    return coalesce(out + finish(state))


def _plain(segments: list[StyledSegment]) -> list[tuple[str, bool, int]]:
    return [(s.text, s.bold, s.color) for s in segments]


# ── Basic SGR ──


def test_color_bold_reset():
    assert _plain(colorize(SAMPLE)) == [
        ("a", False, DEFAULT_COLOR),
        ("b", False, 1),
        ("c", True, 1),
        ("d", False, DEFAULT_COLOR),
    ]


def test_split_after_esc_matches_unsplit():
    assert _run([b"a\x1b", b"[31mb\x1b[1mc\x1b[0md"]) == _run([SAMPLE])


def test_plain_text_single_segment():
    assert _plain(colorize(b"hello world")) == [("hello world", False, DEFAULT_COLOR)]


def test_empty_chunk():
    state, segments = feed(ColorizerState(), b"")
    assert segments == []
    assert state == ColorizerState()


def test_empty_param_is_reset():
    assert _plain(colorize(b"\x1b[31mx\x1b[my")) == [("x", False, 1), ("y", False, DEFAULT_COLOR)]


def test_bold_keeps_color():
    assert _plain(colorize(b"\x1b[36m\x1b[1mx")) == [("x", True, 6)]


def test_color_keeps_bold():
    assert _plain(colorize(b"\x1b[1m\x1b[33mx")) == [("x", True, 3)]


# ── Ignored sequences ──


def test_out_of_range_param_consumed():
    assert _plain(colorize(b"a\x1b[42mb")) == [("ab", False, DEFAULT_COLOR)]


def test_other_final_byte_consumed():
    # erase-line: consumed, no text, no style change
    assert _plain(colorize(b"a\x1b[2Kb")) == [("ab", False, DEFAULT_COLOR)]


def test_esc_without_bracket_dropped():
    assert _plain(colorize(b"a\x1b(b")) == [("ab", False, DEFAULT_COLOR)]


def test_escape_bytes_never_emitted():
    text = "".join(s.text for s in colorize(MIXED))
    assert "\x1b" not in text
    assert "[3" not in text


# ── Chunk boundaries ──


@pytest.mark.parametrize("cut", range(1, len(MIXED)))
def test_any_two_way_split_matches_whole(cut):
    assert _run([MIXED[:cut], MIXED[cut:]]) == _run([MIXED])


def test_byte_by_byte_matches_whole():
    assert _run([bytes([b]) for b in MIXED]) == _run([MIXED])


def test_partial_sequence_kept_in_state():
    state, segments = feed(ColorizerState(), b"x\x1b[3")
    assert _plain(segments) == [("x", False, DEFAULT_COLOR)]
    assert state.pending == b"\x1b[3"

    state, segments = feed(state, b"1my")
    assert _plain(segments) == [("y", False, 1)]
    assert state.pending == b""
    assert state.color == 1


def test_resume_from_constructed_state():
    state = ColorizerState(color=2, bold=True, pending=b"\x1b[")
    state, segments = feed(state, b"0mz")
    assert _plain(segments) == [("z", False, DEFAULT_COLOR)]


def test_split_multibyte_character():
    data = "한".encode()
    state, segments = feed(ColorizerState(), data[:2])
    assert segments == []
    assert state.undecoded == data[:2]

    state, segments = feed(state, data[2:])
    assert _plain(segments) == [("한", False, DEFAULT_COLOR)]
    assert state.undecoded == b""


def test_unfinished_sequence_dropped_at_end():
    state, segments = feed(ColorizerState(), b"tail\x1b[3")
    assert _plain(segments) == [("tail", False, DEFAULT_COLOR)]
    assert finish(state) == []


def test_truncated_character_replaced_at_end():
    state, _ = feed(ColorizerState(), "한".encode()[:2])
    assert [s.text for s in finish(state)] == ["�"]


def test_invalid_utf8_replaced():
    assert colorize(b"a\xffb")[0].text == "a�b"


@pytest.mark.parametrize("chunks", [[b"\xc3\x1b[31mA"], [b"\xc3", b"\x1b[31mA"], [b"\xc3\x1b", b"[31mA"]])
def test_truncated_character_before_escape_keeps_old_style(chunks):
    assert _plain(_run(chunks)) == [("�", False, DEFAULT_COLOR), ("A", False, 1)]


# ── Palette ──


def test_palette_rows():
    assert resolve_color(False, 1) == "#cd0000"
    assert resolve_color(True, 1) == "#ff0000"
    assert resolve_color(False, DEFAULT_COLOR) != resolve_color(True, DEFAULT_COLOR)


def test_segment_css_color():
    seg = StyledSegment(text="x", bold=True, color=2)
    assert seg.css_color == resolve_color(True, 2)


def test_coalesce_merges_same_style():
    segs = [StyledSegment(text="a"), StyledSegment(text="b"), StyledSegment(text="c", color=1), StyledSegment(text="")]
    assert _plain(coalesce(segs)) == [("ab", False, DEFAULT_COLOR), ("c", False, 1)]
