"""
Inline math styling for lesson HTML.

`format_math` works on one run of already-escaped text (no tags) and wraps
equations, comparisons and fill-in-the-blank sums in
`<code class="math ...">`, and bare fractions in `<span class="fraction">`.
Patterns run most specific first; text wrapped by an earlier pattern is
never matched again.
"""

from __future__ import annotations

import re
from typing import Callable, List, Tuple, Union

_NUM = r"\d+(?:\.\d+)?"
_FRACTION = r"\d+/\d+"
_COMPARATOR = r"(&lt;|&gt;|≤|≥)"

_WRAPPED = re.compile(r'(<code class="math[^"]*">.*?</code>|<span class="fraction">.*?</span>)')

Replacement = Union[str, Callable[[re.Match], str]]


def _code(css: str) -> Callable[[re.Match], str]:
    def wrap(match: re.Match) -> str:
        return f'<code class="math {css}">{" ".join(match.group(0).split())}</code>'

    return wrap


def _equation(css: str, operator: str) -> str:
    return rf'<code class="math {css}">\1 {operator} \2 = \3</code>'


def _fill_blank(match: re.Match) -> str:
    expression = re.sub(r"_+", "___", " ".join(match.group(0).split()))
    return f'<code class="math fill-blank">{expression}</code>'


RULES: List[Tuple[re.Pattern, Replacement]] = [
    (
        re.compile(rf"({_FRACTION}|\d+)\s*[x×+\-÷]\s*(?:_+|\?)\s*=\s*({_FRACTION}|\d+)"),
        _fill_blank,
    ),
    (
        re.compile(rf"({_FRACTION})\s*[x×]\s*({_FRACTION})\s*=\s*({_FRACTION}|\d+)"),
        _equation("fraction-operation", "×"),
    ),
    (
        re.compile(rf"({_FRACTION})\s*÷\s*({_FRACTION})\s*=\s*({_FRACTION}|\d+)"),
        _equation("fraction-operation", "÷"),
    ),
    (
        re.compile(rf"(?<![\d/])({_FRACTION})\s*=\s*({_FRACTION})(?![\d/])"),
        r'<code class="math fraction-equality">\1 = \2</code>',
    ),
    (
        re.compile(rf"(?<![\d/])({_FRACTION})\s*{_COMPARATOR}\s*({_FRACTION})(?![\d/])"),
        r'<code class="math comparison">\1 \2 \3</code>',
    ),
    (re.compile(rf"(?<![\d/.])({_NUM})\s*[x×]\s*({_NUM})\s*=\s*({_NUM})\b"), _equation("multiplication", "×")),
    (re.compile(rf"(?<![\d/.])({_NUM})\s*[÷/]\s*({_NUM})\s*=\s*({_NUM})\b"), _equation("division", "÷")),
    (re.compile(rf"(?<![\d/.])({_NUM})\s*\+\s*({_NUM})\s*=\s*({_NUM})\b"), _equation("addition", "+")),
    (re.compile(rf"(?<![\d/.])({_NUM})\s*-\s*({_NUM})\s*=\s*({_NUM})\b"), _equation("subtraction", "-")),
    (
        re.compile(rf"(?<![\d/.])({_NUM})\s*{_COMPARATOR}\s*({_NUM})\b"),
        r'<code class="math comparison">\1 \2 \3</code>',
    ),
    (re.compile(r"\(([^()]+)\)\s*[/÷]\s*\(([^()]+)\)"), r'<code class="math parenthesized">(\1) ÷ (\2)</code>'),
    (re.compile(r"\b([a-z])\s+([+×÷])\s+([a-z])\b"), _code("algebraic")),
    (re.compile(rf"(?<![\d/])({_FRACTION})(?![\d/])"), r'<span class="fraction">\1</span>'),
]


def format_math(text: str) -> str:
    if not text or not re.search(r"\d|[a-z]\s+[+×÷]\s+[a-z]", text):
        return text
    for pattern, replacement in RULES:
        parts = _WRAPPED.split(text)
        for index in range(0, len(parts), 2):
            parts[index] = pattern.sub(replacement, parts[index])
        text = "".join(parts)
    return text
