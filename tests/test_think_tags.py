from __future__ import annotations

import pytest

from chatstream.chat.think_tags import ThinkTagExtractor, split_reasoning, wrap_reasoning


def _run(increments: list[str], start: str = "<think>", end: str = "</think>") -> tuple[str, str, list[tuple[str, str]]]:
    ex = ThinkTagExtractor(start, end)
    segments: list[tuple[str, str]] = []
    for inc in increments:
        segments.extend(ex.feed(inc).segments)
    segments.extend(ex.flush().segments)
    text = "".join(s for kind, s in segments if kind == "text")
    reasoning = "".join(s for kind, s in segments if kind == "reasoning")
    return text, reasoning, segments


def test_marker_straddling_increments() -> None:
    ex = ThinkTagExtractor()
    r1 = ex.feed("Hello <thi")
    r2 = ex.feed("nk>because X</thi")
    r3 = ex.feed("nk> World")
    tail = ex.flush()

    assert r1.text_delta == "Hello "
    assert r1.reasoning_delta is None
    assert r2.text_delta is None
    assert r2.reasoning_delta == "because X"
    assert r3.text_delta == " World"
    assert r3.reasoning_delta is None
    assert not tail


@pytest.mark.parametrize("cut", range(1, 40))
def test_any_two_way_split_matches_unsplit(cut: int) -> None:
    full = "pre <think>deep thought</think> post"
    whole = _run([full])
    split = _run([full[:cut], full[cut:]])
    assert split[0] == whole[0] == "pre  post"
    assert split[1] == whole[1] == "deep thought"


def test_character_by_character_never_double_emits() -> None:
    full = "a<think>b</think>c<think>d</think>e"
    text, reasoning, segments = _run(list(full))
    assert text == "ace"
    assert reasoning == "bd"
    emitted = "".join(s for _, s in segments)
    assert emitted == "abcde"


def test_unclosed_block_stays_reasoning() -> None:
    text, reasoning, _ = _run(["Answer: <think>still going", " and going"])
    assert text == "Answer: "
    assert reasoning == "still going and going"


def test_held_back_partial_marker_is_released_on_flush() -> None:
    ex = ThinkTagExtractor()
    first = ex.feed("value <th")
    assert first.text_delta == "value "
    tail = ex.flush()
    assert tail.text_delta == "<th"


def test_text_that_only_resembles_a_marker_is_released() -> None:
    ex = ThinkTagExtractor()
    r1 = ex.feed("a <thin")
    r2 = ex.feed("g> b")
    assert r1.text_delta == "a "
    assert r2.text_delta == "<thing> b"


def test_content_after_end_marker_in_same_increment() -> None:
    ex = ThinkTagExtractor()
    res = ex.feed("<think>r</think>visible")
    assert res.segments == (("reasoning", "r"), ("text", "visible"))


def test_custom_markers() -> None:
    text, reasoning, _ = _run(["x[[r", "sn]]y[[/r", "sn]]z"], start="[[rsn]]", end="[[/rsn]]")
    assert text == "xz"
    assert reasoning == "y"


def test_invalid_markers_rejected() -> None:
    with pytest.raises(ValueError):
        _ = ThinkTagExtractor("", "</think>")
    with pytest.raises(ValueError):
        _ = ThinkTagExtractor("|", "|")


def test_split_and_wrap_reasoning() -> None:
    stored = wrap_reasoning("because X", "Hello World")
    assert stored == "<think>because X</think>\nHello World"
    assert split_reasoning(stored) == ("because X", "Hello World")
    assert split_reasoning("no markers here") == (None, "no markers here")
    assert wrap_reasoning(None, "plain") == "plain"
