"""Keyword-based fallback classifier.

Pure functions of the input text over a keyword index built from the
taxonomy. Used when the embedding tier is unavailable or not confident.

Tiers offered here, strongest first:
  classify_semantic: word-overlap similarity against every keyword
  classify_keywords: exact unigram/bigram/trigram hits
  priority_fallback: fixed categories in taxonomy priority order

Maintenance surface: add keywords to modelfinder/data/tasks.yaml rather than
special-casing phrases here.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

from ..taxonomy import TaskCategory, Taxonomy
from .models import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    CategoryPrediction,
    ClassificationMethod,
    ClassificationResult,
    SubcategoryPrediction,
    confidence_level,
)

logger = logging.getLogger(__name__)

SEMANTIC_MIN_SIMILARITY = 0.1
AUTHORED_KEYWORD_BOOST = 1.5
PRIORITY_BOOST = 0.1
FALLBACK_SCORES = (0.3, 0.2, 0.1)
FALLBACK_CONFIDENCE = 0.1

MAX_CATEGORY_PREDICTIONS = 3
MAX_SUBCATEGORY_PREDICTIONS = 5

_NON_WORD_RE = re.compile(r"[^a-z0-9\s]+")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    text = _NON_WORD_RE.sub(" ", (text or "").lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def _ngrams(words: list[str], n: int) -> list[str]:
    return [" ".join(words[i:i + n]) for i in range(len(words) - n + 1)]


def keyword_weight(keyword: str, subcategory_keywords: list[str]) -> float:
    """Specificity weight: longer phrases and smaller keyword sets weigh more."""
    length_weight = min(len(keyword.split()) / 3, 1.0)
    rarity_weight = 1 / math.sqrt(max(1, len(subcategory_keywords)))
    return 0.5 + length_weight * 0.3 + rarity_weight * 0.2


def semantic_similarity(text: str, keyword: str) -> float:
    """Word-overlap similarity between normalized text and a keyword phrase.

    0.5 x Jaccard of the word sets, +0.5 if the whole phrase occurs, +0.3 if
    the keyword has several words and any of them occurs.
    """
    text_words = set(text.split())
    keyword_words = set(keyword.split())
    if not text_words or not keyword_words:
        return 0.0

    jaccard = len(text_words & keyword_words) / len(text_words | keyword_words)
    contains_phrase = 0.5 if f" {keyword} " in f" {text} " else 0.0
    contains_part = 0.3 if len(keyword_words) > 1 and keyword_words & text_words else 0.0
    return jaccard * 0.5 + contains_phrase + contains_part


@dataclass(frozen=True)
class KeywordEntry:
    """One (keyword → subcategory) link in the index."""
    category: TaskCategory
    subcategory: str
    category_label: str
    subcategory_label: str
    weight: float
    authored: bool


class _ScoreBoard:
    """Accumulates per-category and per-subcategory scores and match counts."""

    def __init__(self):
        self.categories: dict[TaskCategory, list] = {}
        self.subcategories: dict[tuple[TaskCategory, str], list] = {}
        self.labels: dict[TaskCategory, str] = {}
        self.sub_labels: dict[tuple[TaskCategory, str], str] = {}

    def add(self, entry: KeywordEntry, score: float) -> None:
        cat = self.categories.setdefault(entry.category, [0.0, 0])
        cat[0] += score
        cat[1] += 1
        key = (entry.category, entry.subcategory)
        sub = self.subcategories.setdefault(key, [0.0, 0])
        sub[0] += score
        sub[1] += 1
        self.labels.setdefault(entry.category, entry.category_label)
        self.sub_labels.setdefault(key, entry.subcategory_label)

    @property
    def match_count(self) -> int:
        return sum(count for _, count in self.categories.values())

    def boost(self, priorities: dict[TaskCategory, int]) -> None:
        for category, data in self.categories.items():
            data[0] *= 1 + priorities.get(category, 1) * PRIORITY_BOOST

    def predictions(self) -> list[CategoryPrediction]:
        """Average per match, keep the top three, normalize to sum 1."""
        averaged = sorted(
            ((c, s / max(1, n)) for c, (s, n) in self.categories.items()),
            key=lambda item: -item[1],
        )[:MAX_CATEGORY_PREDICTIONS]
        total = sum(score for _, score in averaged)
        return [
            CategoryPrediction(
                category=c, label=self.labels[c],
                score=min(1.0, score / total) if total > 0 else 0.0,
            )
            for c, score in averaged
        ]

    def subcategory_predictions(self) -> list[SubcategoryPrediction]:
        averaged = sorted(
            ((key, s / max(1, n)) for key, (s, n) in self.subcategories.items()),
            key=lambda item: -item[1],
        )[:MAX_SUBCATEGORY_PREDICTIONS]
        total = sum(score for _, score in averaged)
        return [
            SubcategoryPrediction(
                category=key[0], subcategory=key[1], label=self.sub_labels[key],
                score=score / total if total > 0 else 0.0,
            )
            for key, score in averaged
        ]


class KeywordTaskClassifier:
    """Keyword and word-overlap classifier over the task taxonomy.

    Args:
        taxonomy: Validated taxonomy providing keywords and priority order.
        confidence_threshold: Lower bound of the medium confidence band.
    """

    def __init__(
        self,
        taxonomy: Taxonomy,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ):
        self.taxonomy = taxonomy
        self.confidence_threshold = confidence_threshold
        self.keyword_index = self._build_keyword_index(taxonomy)
        # Earlier in priority_order means a larger number
        order = taxonomy.priority_order
        self.category_priority = {c: len(order) - i for i, c in enumerate(order)}
        logger.info(
            "Keyword index built: %d keywords across %d categories",
            len(self.keyword_index), len(taxonomy.categories),
        )

    @staticmethod
    def _build_keyword_index(taxonomy: Taxonomy) -> dict[str, list[KeywordEntry]]:
        index: dict[str, list[KeywordEntry]] = {}
        for category, spec in taxonomy.categories.items():
            for sub_key, sub_spec in spec.subcategories.items():
                authored = list(sub_spec.keywords)
                implicit = [
                    category.value.replace("_", " "),
                    sub_key.replace("_", " "),
                    spec.label,
                    sub_spec.label,
                ]
                authored_normalized = {normalize_text(k) for k in authored}
                for keyword in authored + implicit:
                    normalized = normalize_text(keyword)
                    if not normalized:
                        continue
                    index.setdefault(normalized, []).append(KeywordEntry(
                        category=category,
                        subcategory=sub_key,
                        category_label=spec.label,
                        subcategory_label=sub_spec.label,
                        weight=keyword_weight(keyword, authored),
                        authored=normalized in authored_normalized,
                    ))
        return index

    def _result(
        self,
        text: str,
        board: _ScoreBoard,
        method: ClassificationMethod,
    ) -> ClassificationResult:
        predictions = board.predictions()
        confidence = predictions[0].score if predictions else 0.0
        winner_matches = board.categories[predictions[0].category][1] if predictions else 0
        return ClassificationResult(
            input=text,
            predictions=predictions,
            subcategory_predictions=board.subcategory_predictions(),
            confidence=confidence,
            confidence_level=confidence_level(confidence, self.confidence_threshold),
            method=method,
            votes_for_winner=winner_matches,
            total_votes=board.match_count,
        )

    def classify_semantic(self, text: str) -> ClassificationResult:
        """Word-overlap similarity against every indexed keyword."""
        normalized = normalize_text(text)
        board = _ScoreBoard()
        if normalized:
            for keyword, entries in self.keyword_index.items():
                similarity = semantic_similarity(normalized, keyword)
                if similarity <= SEMANTIC_MIN_SIMILARITY:
                    continue
                for entry in entries:
                    board.add(entry, similarity * entry.weight)
        return self._result(text, board, ClassificationMethod.SEMANTIC)

    def classify_keywords(self, text: str) -> ClassificationResult:
        """Exact n-gram hits, boosted for authored keywords and category priority.

        ``total_votes`` is the number of keyword hits; zero means no match.
        """
        words = normalize_text(text).split()
        board = _ScoreBoard()
        for ngram in words + _ngrams(words, 2) + _ngrams(words, 3):
            for entry in self.keyword_index.get(ngram, ()):
                boost = AUTHORED_KEYWORD_BOOST if entry.authored else 1.0
                board.add(entry, entry.weight * boost)
        board.boost(self.category_priority)
        return self._result(text, board, ClassificationMethod.KEYWORD)

    def priority_fallback(self, text: str = "") -> ClassificationResult:
        """First three categories of the priority order with fixed scores."""
        predictions = [
            CategoryPrediction(
                category=category,
                label=self.taxonomy.category_label(category),
                score=score,
            )
            for category, score in zip(self.taxonomy.priority_order, FALLBACK_SCORES)
        ]
        return ClassificationResult(
            input=text,
            predictions=predictions,
            confidence=FALLBACK_CONFIDENCE,
            confidence_level=confidence_level(FALLBACK_CONFIDENCE, self.confidence_threshold),
            method=ClassificationMethod.PRIORITY_FALLBACK,
        )

    def category_info(self, category: TaskCategory) -> Optional[dict]:
        spec = self.taxonomy.categories.get(TaskCategory(category))
        if spec is None:
            return None
        return {
            "key": TaskCategory(category).value,
            "label": spec.label,
            "description": spec.description,
            "subcategories": [
                {"key": k, "label": s.label, "keywords": list(s.keywords)}
                for k, s in spec.subcategories.items()
            ],
            "priority": self.category_priority.get(TaskCategory(category), 0),
        }

    def suggest_improvements(self, result: ClassificationResult) -> list[str]:
        """Hints for rephrasing a low-confidence request."""
        suggestions = []
        if result.confidence < 0.3:
            suggestions.append(
                "Task description is too vague. Try adding more specific details "
                "about what you want to accomplish."
            )
        if result.confidence < 0.5:
            suggestions.append(
                "Consider mentioning the type of data you're working with "
                "(text, images, audio, etc.)."
            )
        if result.method == ClassificationMethod.PRIORITY_FALLBACK:
            suggestions.append(
                'No clear task indicators found. Try using keywords like "classify", '
                '"detect", "generate", or "predict".'
            )
        if result.predictions and result.confidence < 0.6:
            info = self.category_info(result.predictions[0].category)
            if info:
                terms = " or ".join(
                    ", ".join(s["keywords"][:2]) for s in info["subcategories"] if s["keywords"]
                )
                suggestions.append(
                    f"This seems related to {info['label']}. Try using terms like: {terms}."
                )
        return suggestions
