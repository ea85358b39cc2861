"""Prompt builder — turns the code a listener is working on into a music prompt."""
import re
from typing import Optional

from .config import DEFAULT_GENRE, MAX_SNIPPET

# Checked in order; first match wins
_LANGUAGE_PATTERNS = [
    ("typescript", r"\b(interface|namespace|enum|implements|readonly)\b|\.(ts|tsx)$"),
    ("javascript", r"\b(const|let|var|function|=>|async|await|export)\b|\.(js|jsx)$"),
    ("python", r"\b(def|elif|lambda|self)\b|\.py$"),
    ("java", r"\b(public|private|protected|extends|void)\b|\.java$"),
    ("go", r"\b(func|package|chan|struct)\b|\.go$"),
    ("rust", r"\b(fn|mut|impl|trait|pub)\b|\.rs$"),
    ("ruby", r"\b(module|require|attr_accessor|end)\b|\.rb$"),
    ("sql", r"\b(SELECT|INSERT|UPDATE|DELETE|JOIN|GROUP BY)\b|\.sql$"),
    ("shell", r"(#!/bin/|\bbash\b|\bgrep\b|\bawk\b|\bsed\b)|\.(sh|bash)$"),
]

_LANGUAGE_TO_GENRE = {
    "javascript": ["lo-fi house", "chillhop", "trip hop"],
    "typescript": ["synthwave", "ambient techno", "deep house"],
    "python": ["ambient", "downtempo", "chillwave"],
    "java": ["orchestral", "cinematic", "epic"],
    "go": ["minimal techno", "dub techno", "microhouse"],
    "rust": ["industrial", "dark ambient", "techno"],
    "ruby": ["jazz", "bossa nova", "smooth jazz"],
    "sql": ["acid jazz", "nu jazz", "broken beat"],
    "shell": ["breakbeat", "drum and bass", "jungle"],
    "unknown": ["lo-fi", "ambient", "electronic"],
}

_STYLE_TO_MOOD = {
    "complex": ["intense", "focused", "intricate"],
    "simple": ["relaxed", "calm", "gentle"],
    "data_heavy": ["structured", "methodical", "precise"],
    "functional": ["elegant", "flowing", "smooth"],
    "object_oriented": ["layered", "textured", "organized"],
    "declarative": ["dreamy", "atmospheric", "spacious"],
    "imperative": ["driving", "direct", "energetic"],
}

# Checked in this order, so ties go to the earlier style
_STYLE_PATTERNS = [
    ("functional", r"\b(lambda|map|filter|reduce)\b|=>"),
    ("declarative", r"\b(return|yield|with|const)\b"),
    ("object_oriented", r"\b(class|self|this|new|extends)\b"),
    ("data_heavy", r"\b(SELECT|INSERT|json|dict|DataFrame)\b"),
    ("imperative", r"\b(for|while|break|continue|goto)\b"),
]

_POSITIVE = {"good", "great", "excellent", "nice", "best", "better", "improve", "feature", "success",
             "working", "fixed", "resolved", "solution", "optimize", "efficient", "clean", "elegant",
             "simple", "clear"}
_NEGATIVE = {"bad", "worst", "terrible", "poor", "bug", "error", "issue", "problem", "fail", "failure",
             "crash", "broken", "wrong", "fix", "hack", "workaround", "complex", "complicated",
             "confusing", "messy", "slow", "inefficient"}

_COMMENTS_AND_STRINGS = re.compile(
    r"#.*?$|//.*?$|/\*[\s\S]*?\*/|\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'", re.MULTILINE
)

# (upper complexity bound, bpm band)
_BPM_BANDS = [(0.2, (60, 80)), (0.4, (80, 100)), (0.6, (100, 120)), (0.8, (120, 140)), (1.01, (140, 160))]


def detect_language(code: str) -> str:
    for language, pattern in _LANGUAGE_PATTERNS:
        if re.search(pattern, code, re.IGNORECASE | re.MULTILINE):
            return language
    return "unknown"


def complexity(code: str) -> float:
    """Rough 0..1 score from control flow, calls and nesting depth."""
    if not code.strip():
        return 0.0
    control = len(re.findall(r"\b(if|for|while|switch|catch|try|else|match)\b", code))
    calls = len(re.findall(r"\w+\s*\(", code))
    depth = max((len(ln) - len(ln.lstrip()) for ln in code.splitlines()), default=0) / 8
    score = min(control / 15, 1) * 0.4 + min(calls / 30, 1) * 0.4 + min(depth, 1) * 0.2
    return max(0.0, min(score, 1.0))


def dominant_style(code: str) -> Optional[str]:
    counts = [(len(re.findall(pattern, code)), style) for style, pattern in _STYLE_PATTERNS]
    best = max(counts, key=lambda c: c[0])
    return best[1] if best[0] else None


def sentiment(code: str) -> float:
    """-1..1 from the words used in comments and string literals."""
    text = " ".join(_COMMENTS_AND_STRINGS.findall(code)).lower()
    words = re.findall(r"[a-z]+", text)
    pos = sum(w in _POSITIVE for w in words)
    neg = sum(w in _NEGATIVE for w in words)
    if not pos and not neg:
        return 0.0
    return (pos - neg) / (pos + neg)


def select_genre(code: str) -> str:
    genres = _LANGUAGE_TO_GENRE[detect_language(code)]
    style = dominant_style(code)
    if style is None:
        return genres[0]

    if style in ("functional", "declarative"):
        index = 0
    elif style in ("object_oriented", "data_heavy"):
        index = 1
    else:
        index = 2 % len(genres)

    mood = sentiment(code)
    if mood > 0.3:
        index = (index + 1) % len(genres)
    elif mood < -0.3:
        index = max(0, index - 1)
    return genres[index]


def select_moods(code: str, score: float) -> list[str]:
    moods = []
    style = dominant_style(code)
    if style:
        moods += _STYLE_TO_MOOD[style][:2]
    moods += _STYLE_TO_MOOD["complex" if score > 0.6 else "simple"][:1]

    mood = sentiment(code)
    if mood > 0.3:
        moods.append("uplifting")
    elif mood < -0.3:
        moods.append("melancholic")
    else:
        moods.append("contemplative")
    return list(dict.fromkeys(moods))[:3]


def suggest_instrumentation(code: str) -> list[str]:
    lines = code.splitlines() or [""]
    branches = len(re.findall(r"\b(if|for|while|case|catch|switch)\b|&&|\|\|", code))
    functions = set(re.findall(r"\b(?:def|function|fn|func)\s+(\w+)", code))
    comment_chars = sum(len(ln) for ln in lines if re.match(r"\s*(//|#|/\*|\*)", ln))
    avg_indent = sum(len(ln) - len(ln.lstrip()) for ln in lines) / len(lines)
    recursive = any(len(re.findall(rf"\b{re.escape(name)}\s*\(", code)) > 1 for name in functions)

    instruments = ["acoustic kick & snare"]
    if re.search(r"\b(SELECT|INSERT|UPDATE|DELETE)\b", code.upper()):
        instruments += ["lo-fi drum loop", "dusty vinyl crackle", "electric rhodes piano"]
    if re.search(r"\b(async|await|Promise)\b", code):
        instruments += ["four-on-the-floor house kit", "side-chained saw pad"]
    if recursive:
        instruments.append("arpeggiated bell synth")
    if branches + len(functions) > 15:
        instruments.append("poly synth chords")
    if comment_chars / max(len(code), 1) > 0.3:
        instruments.append("soft lead vocal ooohs")
    if avg_indent > 8:
        instruments.append("extended jazz piano")
    instruments.append("minimal sub-bass" if len(lines) < 40 else "warm string pad")
    return list(dict.fromkeys(instruments))


def select_bpm(score: float) -> int:
    for bound, (low, high) in _BPM_BANDS:
        if score < bound:
            return (low + high) // 2
    return 150


def build_prompt(source_text: str = "", genre: Optional[str] = None) -> str:
    """Pure: same code and genre always give the same prompt."""
    snippet = (source_text or "")[:MAX_SNIPPET]
    if not snippet.strip():
        return f"Genre: {genre or DEFAULT_GENRE}\nMood: focused, steady\nInstrumental background music for coding."

    language = detect_language(snippet)
    score = complexity(snippet)
    mood = sentiment(snippet)
    final_genre = genre or select_genre(snippet)
    moods = ", ".join(select_moods(snippet, score))
    feeling = "positive" if mood > 0.3 else "negative" if mood < -0.3 else "neutral"
    character = "sophisticated and detailed" if score > 0.5 else "clean and elegant"
    return (
        f"Genre: {final_genre}\n"
        f"Mood: {moods}\n"
        f"Tempo: {select_bpm(score)} BPM\n"
        f"Style: {'complex and intricate' if score > 0.6 else 'smooth and flowing'}\n"
        f"Sentiment: {feeling}\n"
        f"Inspiration: {language} code that is {character}\n"
        f"Instrumentation: {', '.join(suggest_instrumentation(snippet))}\n"
        f"Instrumental background music for someone writing {language}, with a {moods} atmosphere.\n"
        f"CODE CONTEXT:\n{snippet}"
    )
