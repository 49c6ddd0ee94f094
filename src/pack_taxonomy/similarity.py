"""Folder-name similarity scoring.

Two folder names are compared with five blended signals:

* token overlap (Jaccard over normalised tokens),
* Levenshtein similarity, taking the better of the raw normalised strings
  and their sorted-token forms (``rapidfuzz``),
* permutation (same tokens in a different order),
* phonetic agreement (Soundex codes),
* positional context (same parent, same depth, shared siblings).

Names equal after normalisation score exactly 1.0.  Without context the
contextual signal is neutral (0.5) so that context never decides on its
own whether two names match.
"""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rapidfuzz.distance import Levenshtein

from . import tuning


_CAMEL_RE = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS_RE = re.compile(r"[_\-\s]+")
_TOKEN_SEPARATORS_RE = re.compile(r"[_\-.\s]+")
_PLURAL_WORD_RE = re.compile(r"\b(?:s|es)\b")

_SOUNDEX_CODES: Dict[str, str] = {}
for _letters, _code in (("BFPV", "1"), ("CGJKQSXZ", "2"), ("DT", "3"), ("L", "4"), ("MN", "5"), ("R", "6")):
    for _letter in _letters:
        _SOUNDEX_CODES[_letter] = _code


@dataclass(frozen=True)
class PathContext:
    """Where a folder sits inside its pack."""

    parent_path: str = ""
    depth: int = 1
    siblings: tuple = ()


@dataclass
class SimilarityScores:
    token_overlap: float = 0.0
    levenshtein: float = 0.0
    permutation: float = 0.0
    phonetic: float = 0.0
    contextual: float = 0.0
    overall: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "token_overlap": round(self.token_overlap, 4),
            "levenshtein": round(self.levenshtein, 4),
            "permutation": round(self.permutation, 4),
            "phonetic": round(self.phonetic, 4),
            "contextual": round(self.contextual, 4),
            "overall": round(self.overall, 4),
        }


def normalize(text: str) -> str:
    """Lower-case, unify separators and drop isolated plural suffixes."""
    text = _SEPARATORS_RE.sub(" ", text.lower()).strip()
    text = _PLURAL_WORD_RE.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def tokenize(text: str) -> List[str]:
    """Split on camelCase and separators, singularise, de-duplicate."""
    text = _CAMEL_RE.sub(r"\1 \2", text)
    raw = [t for t in _TOKEN_SEPARATORS_RE.split(text.lower()) if t]
    tokens: List[str] = []
    for token in raw:
        if token.endswith("s") and len(token) > 2 and not token.endswith("ss"):
            token = token[:-1]
        if token not in tokens:
            tokens.append(token)
    return tokens


def soundex(text: str) -> str:
    clean = re.sub(r"[^A-Z]", "", text.upper())
    if not clean:
        return "0000"
    code = clean[0]
    previous = _SOUNDEX_CODES.get(clean[0], "0")
    for letter in clean[1:]:
        if len(code) >= 4:
            break
        current = _SOUNDEX_CODES.get(letter, "0")
        if current != "0" and current != previous:
            code += current
            previous = current
    return code.ljust(4, "0")


def jaccard(tokens1: List[str], tokens2: List[str]) -> float:
    if not tokens1 or not tokens2:
        return 0.0
    set1, set2 = set(tokens1), set(tokens2)
    return len(set1 & set2) / len(set1 | set2)


@dataclass
class SimilarityScorer:
    """Blend lexical and contextual signals into a [0, 1] similarity."""

    weights: Dict[str, float] = field(default_factory=lambda: dict(tuning.SIMILARITY_WEIGHTS))
    similar_threshold: float = field(default_factory=lambda: tuning.SIMILAR_THRESHOLD)
    strong_threshold: float = field(default_factory=lambda: tuning.STRONG_SIMILAR_THRESHOLD)

    def score(
        self,
        name1: str,
        name2: str,
        context1: Optional[PathContext] = None,
        context2: Optional[PathContext] = None,
    ) -> SimilarityScores:
        norm1 = normalize(name1)
        norm2 = normalize(name2)
        if norm1 == norm2:
            return SimilarityScores(1.0, 1.0, 1.0, 1.0, 1.0, 1.0)

        tokens1 = tokenize(name1)
        tokens2 = tokenize(name2)
        scores = SimilarityScores(
            token_overlap=jaccard(tokens1, tokens2),
            levenshtein=self._levenshtein(norm1, norm2, tokens1, tokens2),
            permutation=self._permutation(tokens1, tokens2),
            phonetic=self._phonetic(norm1, norm2),
            contextual=self._contextual(context1, context2),
        )
        w = self.weights
        overall = (
            w["token_overlap"] * scores.token_overlap
            + w["levenshtein"] * scores.levenshtein
            + w["permutation"] * scores.permutation
            + w["phonetic"] * scores.phonetic
            + w["contextual"] * scores.contextual
        )
        scores.overall = max(0.0, min(1.0, overall))
        return scores

    def similarity(
        self,
        name1: str,
        name2: str,
        context1: Optional[PathContext] = None,
        context2: Optional[PathContext] = None,
    ) -> float:
        return self.score(name1, name2, context1, context2).overall

    def are_similar(self, name1: str, name2: str, context1=None, context2=None) -> bool:
        return self.similarity(name1, name2, context1, context2) >= self.similar_threshold

    def are_strongly_similar(self, name1: str, name2: str, context1=None, context2=None) -> bool:
        return self.similarity(name1, name2, context1, context2) >= self.strong_threshold

    @staticmethod
    def _levenshtein(norm1: str, norm2: str, tokens1: List[str], tokens2: List[str]) -> float:
        direct = Levenshtein.normalized_similarity(norm1, norm2)
        sorted1 = " ".join(sorted(tokens1))
        sorted2 = " ".join(sorted(tokens2))
        reordered = Levenshtein.normalized_similarity(sorted1, sorted2)
        return max(direct, reordered)

    @staticmethod
    def _permutation(tokens1: List[str], tokens2: List[str]) -> float:
        if len(tokens1) != len(tokens2):
            return 0.5 * jaccard(tokens1, tokens2)
        if sorted(tokens1) == sorted(tokens2):
            return 1.0
        return jaccard(tokens1, tokens2)

    @staticmethod
    def _phonetic(norm1: str, norm2: str) -> float:
        code1, code2 = soundex(norm1), soundex(norm2)
        if code1 == code2:
            return 1.0
        matches = sum(1 for a, b in zip(code1, code2) if a == b)
        return matches / max(len(code1), len(code2))

    def _contextual(self, context1: Optional[PathContext], context2: Optional[PathContext]) -> float:
        weights = tuning.CONTEXT_WEIGHTS
        if context1 is None or context2 is None:
            return weights["neutral"]
        score = 0.0
        if context1.parent_path == context2.parent_path:
            score += weights["same_parent"]
        if context1.depth == context2.depth:
            score += weights["same_depth"]
        siblings2 = {normalize(s) for s in context2.siblings}
        common = [s for s in context1.siblings if normalize(s) in siblings2]
        if common:
            longest = max(len(context1.siblings), len(context2.siblings))
            score += weights["common_siblings"] * (len(common) / longest)
        return min(1.0, score)


def detect_common_patterns(folders: List[str]) -> Dict[str, List[str]]:
    """Group folder names that differ only by plural, separator or numbering."""
    patterns: Dict[str, List[str]] = {}
    groupers = (
        ("plural", lambda f: re.sub(r"(?:es|s)\b", "", f.lower())),
        ("separator", lambda f: _SEPARATORS_RE.sub("", f.lower())),
        ("numbering", lambda f: re.sub(r"\d+", "#", f)),
    )
    for label, key_fn in groupers:
        groups: Dict[str, List[str]] = defaultdict(list)
        for folder in folders:
            groups[key_fn(folder)].append(folder)
        for key, members in groups.items():
            if len(members) > 1:
                patterns[f"{label}_{key}"] = members
    return patterns
