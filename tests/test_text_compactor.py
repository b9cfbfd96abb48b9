import random
import string

import pytest

from tahweel.services.text_compactor import (
    MAX_EFFECTIVE_LINES,
    compact_text,
    is_arabic_text,
    normalize_page_text,
)


def test_short_text_is_untouched():
    text = "first\nsecond\nthird"
    assert compact_text(text) == text


def test_merges_first_shortest_pair_on_ties():
    lines = ["x"] * 41
    result = compact_text("\n".join(lines)).split("\n")
    assert len(result) == 40
    assert result[0] == "x x"


def test_merges_minimum_combined_length_pair():
    lines = ["abcd"] * 41
    lines[5], lines[6] = "a", "b"
    result = compact_text("\n".join(lines)).split("\n")
    assert len(result) == 40
    assert result[5] == "a b"
    assert result.count("abcd") == 39


def test_long_lines_count_twice():
    lines = ["y" * 81] * 21
    result = compact_text("\n".join(lines)).split("\n")
    assert len(result) == 20
    assert result[0] == ("y" * 81) + " " + ("y" * 81)


def test_single_line_is_never_split_or_merged():
    text = "z" * 5000
    assert compact_text(text) == text


def _random_page(rng: random.Random) -> str:
    lines = []
    for _ in range(rng.randint(0, 120)):
        width = rng.choice([0, 3, 10, 40, 90, 150])
        lines.append("".join(rng.choice(string.ascii_letters) for _ in range(width)))
    return "\n".join(lines)


@pytest.mark.parametrize("seed", range(8))
def test_compaction_is_idempotent_and_bounded(seed):
    rng = random.Random(seed)
    text = _random_page(rng)
    once = compact_text(text)
    assert compact_text(once) == once
    lines = once.split("\n")
    effective = len(lines) + sum(1 for line in lines if len(line) > 80)
    assert effective <= MAX_EFFECTIVE_LINES or len(lines) == 1


def test_normalize_page_text():
    assert normalize_page_text("a\r\nb\rc") == "a\nb\nc"
    assert normalize_page_text("  one   two\n\n\nthree\t\t") == "one two\nthree"
    assert normalize_page_text("mixed \n kept") == "mixed \n kept"


def test_is_arabic_text():
    assert is_arabic_text("بسم الله الرحمن الرحيم") is True
    assert is_arabic_text("The quick brown fox") is False
    assert is_arabic_text("مرحبا hello عالم") is True


def test_is_arabic_text_ignores_digits_and_punctuation():
    assert is_arabic_text("سلام 2024!!! ...") is True
    assert is_arabic_text("abc ١٢٣") is True


def test_is_arabic_text_without_letters_counts_as_arabic():
    assert is_arabic_text("") is True
    assert is_arabic_text("123 - 456, (789).") is True
