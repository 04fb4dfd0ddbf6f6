"""Reference corpus builder.

Flattens the taxonomy into (text, category, subcategory) seeds for the
embedding classifier. Only authored example phrases are used by default:
keyword-derived phrases are lower quality and dilute the similarity signal.
The keyword path exists for the calibration harness's ablation runs, where
every keyword seed is flagged with ``source="keyword"``.
"""

import logging
import random
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Iterable, Literal, Optional

from .models import TaskCategory, Taxonomy

logger = logging.getLogger(__name__)

SeedSource = Literal["example", "keyword"]

# Keywords that are fine as standalone reference phrases
STANDALONE_KEYWORDS = frozenset({
    "sentiment analysis", "object detection", "image classification",
    "speech recognition", "text classification", "named entity recognition",
    "semantic segmentation", "anomaly detection", "fraud detection",
    "collaborative filtering", "feature engineering", "data cleaning",
    "time series forecasting", "speech to text", "text to speech",
    "image segmentation", "voice recognition",
})

_KEYWORD_TEMPLATES = (
    "{keyword} task",
    "perform {keyword}",
    "I need to {keyword}",
    "{keyword} for my project",
)


@dataclass(frozen=True)
class ReferenceSeed:
    """A reference example before its embedding is attached."""
    text: str
    category: TaskCategory
    subcategory: str
    category_label: str
    subcategory_label: str
    source: SeedSource = "example"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["category"] = self.category.value
        return d


def is_good_keyword(keyword: str) -> bool:
    """Multi-word phrases (3+ words) and well-known task names."""
    return len(keyword.split()) >= 3 or keyword.lower() in STANDALONE_KEYWORDS


def keyword_to_phrase(keyword: str) -> str:
    """Turn a bare keyword into a task-like phrase, deterministically."""
    if " " in keyword:
        return keyword
    index = sum(ord(ch) for ch in keyword) % len(_KEYWORD_TEMPLATES)
    return _KEYWORD_TEMPLATES[index].format(keyword=keyword)


def build_reference_seeds(
    taxonomy: Taxonomy,
    include_keywords: bool = False,
    only_good_keywords: bool = True,
) -> list[ReferenceSeed]:
    """Flatten the taxonomy into reference seeds.

    Args:
        taxonomy: Validated taxonomy.
        include_keywords: Also add keyword-derived seeds (ablation mode).
        only_good_keywords: With ``include_keywords``, keep only keywords
            that already read as task phrases; otherwise every keyword is
            rewritten into a phrase.

    Subcategories without examples contribute nothing and are therefore
    unreachable by the embedding classifier.
    """
    seeds: list[ReferenceSeed] = []

    for category, spec in taxonomy.categories.items():
        for sub_key, sub_spec in spec.subcategories.items():
            for text in sub_spec.examples:
                text = text.strip()
                if not text:
                    continue
                seeds.append(ReferenceSeed(
                    text=text,
                    category=category,
                    subcategory=sub_key,
                    category_label=spec.label,
                    subcategory_label=sub_spec.label,
                ))

            if not include_keywords:
                continue
            for keyword in sub_spec.keywords:
                if only_good_keywords:
                    if not is_good_keyword(keyword):
                        continue
                    text = keyword
                else:
                    text = keyword_to_phrase(keyword)
                seeds.append(ReferenceSeed(
                    text=text,
                    category=category,
                    subcategory=sub_key,
                    category_label=spec.label,
                    subcategory_label=sub_spec.label,
                    source="keyword",
                ))

    logger.debug(
        "Built %d reference seeds (include_keywords=%s)", len(seeds), include_keywords,
    )
    return seeds


def group_by_category(seeds: Iterable[ReferenceSeed]) -> dict[TaskCategory, list[ReferenceSeed]]:
    grouped: dict[TaskCategory, list[ReferenceSeed]] = defaultdict(list)
    for seed in seeds:
        grouped[seed.category].append(seed)
    return dict(grouped)


def category_stats(seeds: Iterable[ReferenceSeed]) -> dict[str, dict[str, int]]:
    """Per-category counts: total, by source, and distinct subcategories."""
    stats: dict[str, dict[str, int]] = {}
    for category, items in group_by_category(seeds).items():
        stats[category.value] = {
            "total": len(items),
            "from_examples": sum(1 for s in items if s.source == "example"),
            "from_keywords": sum(1 for s in items if s.source == "keyword"),
            "subcategories": len({s.subcategory for s in items}),
        }
    return stats


def seeded_shuffle(items: list, seed: int) -> list:
    """Return a shuffled copy; the same seed always gives the same order."""
    shuffled = list(items)
    random.Random(seed).shuffle(shuffled)
    return shuffled


def sample_per_category(
    seeds: list[ReferenceSeed], n: int, seed: int = 42,
) -> list[ReferenceSeed]:
    """Take up to ``n`` seeds from every category (deterministic)."""
    if n < 1:
        raise ValueError("n must be at least 1")
    sampled: list[ReferenceSeed] = []
    for items in group_by_category(seeds).values():
        sampled.extend(seeded_shuffle(items, seed)[:n])
    return sampled


def kfold_splits(
    seeds: list[ReferenceSeed], k: int = 5, seed: int = 42,
) -> list[tuple[list[ReferenceSeed], list[ReferenceSeed]]]:
    """Shuffle once, then cut into ``k`` (train, test) folds."""
    if k < 2:
        raise ValueError("k must be at least 2")
    shuffled = seeded_shuffle(seeds, seed)
    fold_size = -(-len(shuffled) // k)
    splits = []
    for i in range(k):
        start, end = i * fold_size, min((i + 1) * fold_size, len(shuffled))
        test = shuffled[start:end]
        train = shuffled[:start] + shuffled[end:]
        splits.append((train, test))
    return splits


def leave_one_out_indices(
    seeds: list[ReferenceSeed], sample_size: Optional[int] = None, seed: int = 42,
) -> list[int]:
    """Indices of the seeds to hold out, one at a time.

    ``sample_size=None`` (or >= len(seeds)) means every index: true
    leave-one-out. Otherwise a seeded sample balanced across categories, so
    results are reproducible and no category dominates the estimate.
    """
    if sample_size is None or sample_size >= len(seeds):
        return list(range(len(seeds)))

    by_category: dict[TaskCategory, list[int]] = defaultdict(list)
    for i, s in enumerate(seeds):
        by_category[s.category].append(i)

    per_category = max(1, sample_size // max(1, len(by_category)))
    picked: list[int] = []
    for indices in by_category.values():
        picked.extend(seeded_shuffle(indices, seed)[:per_category])
    return sorted(picked)
