import pytest

from vibetrack.prompt import (
    build_prompt,
    complexity,
    detect_language,
    select_bpm,
    select_genre,
    sentiment,
    suggest_instrumentation,
)

PYTHON_SNIPPET = """
def load(path):
    with open(path) as f:
        return [line for line in f if line.strip()]
"""

GO_SNIPPET = """
package main

func main() {
    ch := make(chan int)
}
"""


def test_empty_source_gives_genre_only_prompt() -> None:
    prompt = build_prompt("", "jazz")

    assert prompt.startswith("Genre: jazz")
    assert "CODE CONTEXT" not in prompt


def test_prompt_is_deterministic() -> None:

    """Same code and genre, same prompt."""

    assert build_prompt(PYTHON_SNIPPET, "ambient") == build_prompt(PYTHON_SNIPPET, "ambient")


def test_language_picks_the_genre_when_none_given() -> None:
    prompt = build_prompt(PYTHON_SNIPPET)

    assert "Genre: ambient" in prompt
    assert "Inspiration: python code" in prompt
    assert PYTHON_SNIPPET.strip() in prompt


def test_explicit_genre_wins_over_language() -> None:
    assert "Genre: drum and bass" in build_prompt(GO_SNIPPET, "drum and bass")


@pytest.mark.parametrize("snippet, language", [
    (PYTHON_SNIPPET, "python"),
    (GO_SNIPPET, "go"),
    ("SELECT id FROM users WHERE active = 1", "sql"),
    ("lorem ipsum dolor", "unknown"),
])
def test_detect_language(snippet: str, language: str) -> None:
    assert detect_language(snippet) == language


def test_complexity_bounds_and_tempo_bands() -> None:
    busy = "\n".join("        if x: for y in z: call(y)" for _ in range(40))

    assert complexity("") == 0.0
    assert 0.0 < complexity(busy) <= 1.0
    assert select_bpm(0.0) == 70
    assert select_bpm(complexity(busy)) > select_bpm(complexity(PYTHON_SNIPPET))


def test_long_source_is_truncated() -> None:
    huge = "x = 1\n" * 5000

    assert len(build_prompt(huge, "ambient")) < 2000


def test_prompt_carries_mood_sentiment_and_instrumentation() -> None:
    prompt = build_prompt(PYTHON_SNIPPET, "ambient")

    assert "\nMood: " in prompt
    assert "\nSentiment: neutral" in prompt
    assert "\nInstrumentation: acoustic kick & snare" in prompt


def test_sentiment_reads_comments_and_strings() -> None:
    assert sentiment("# clean, elegant solution\nx = 1") > 0.3
    assert sentiment("// ugly hack around a crash bug\nlet x = 1") < -0.3
    assert sentiment("x = 1") == 0.0


def test_positive_comments_shift_the_genre() -> None:

    """Upbeat comments move one step along the language's genre list."""

    cheerful = PYTHON_SNIPPET + "# great, clean and efficient\n"

    assert select_genre(PYTHON_SNIPPET) == "ambient"
    assert select_genre(cheerful) == "downtempo"


def test_instrumentation_follows_code_features() -> None:
    sql = suggest_instrumentation("SELECT id FROM users WHERE active = 1")
    concurrent = suggest_instrumentation("async function load() { await fetch(url) }")

    assert "dusty vinyl crackle" in sql
    assert "side-chained saw pad" in concurrent
    assert "minimal sub-bass" in concurrent
