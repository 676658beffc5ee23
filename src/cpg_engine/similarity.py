# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""Fuzzy scoring used by name lookup and node search.

Both scores are normalised to [0, 1] and are deterministic, so search
results sort identically across runs.
"""

import re
from difflib import SequenceMatcher
from typing import Set

# Substring hits in purpose text always rank at least this high.
SUBSTRING_SCORE = 0.8

_TOKEN_RE = re.compile(r"[A-Za-z0-9]+")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def name_similarity(query: str, name: str) -> float:
    """Case-insensitive similarity of two identifiers.

    Exact (case-sensitive) equality scores 1.0; everything else uses the
    SequenceMatcher ratio of the lowercased strings.
    """
    if query == name:
        return 1.0
    a = query.lower()
    b = name.lower()
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio()


def tokenize(text: str) -> Set[str]:
    """Split text into lowercase word tokens, breaking camelCase apart."""
    tokens: Set[str] = set()
    for raw in _TOKEN_RE.findall(text):
        for part in _CAMEL_RE.split(raw):
            if part:
                tokens.add(part.lower())
    return tokens


def text_similarity(query: str, text: str) -> float:
    """Score how well a free-text query matches a purpose description.

    The score is the fraction of query tokens present in the text; a
    case-insensitive substring match scores at least SUBSTRING_SCORE.
    """
    if not query or not text:
        return 0.0
    query_tokens = tokenize(query)
    if not query_tokens:
        return 0.0
    text_tokens = tokenize(text)
    score = len(query_tokens & text_tokens) / len(query_tokens)
    if query.lower().strip() in text.lower():
        score = max(score, SUBSTRING_SCORE)
    return min(score, 1.0)
