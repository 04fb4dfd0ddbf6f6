"""Task taxonomy and reference corpus builder."""

from .corpus import (
    ReferenceSeed,
    build_reference_seeds,
    category_stats,
    group_by_category,
    kfold_splits,
    leave_one_out_indices,
    sample_per_category,
)
from .loader import DEFAULT_TAXONOMY_PATH, load_taxonomy
from .models import CorpusGap, TaskCategory, Taxonomy

__all__ = [
    "CorpusGap",
    "DEFAULT_TAXONOMY_PATH",
    "ReferenceSeed",
    "TaskCategory",
    "Taxonomy",
    "build_reference_seeds",
    "category_stats",
    "group_by_category",
    "kfold_splits",
    "leave_one_out_indices",
    "load_taxonomy",
    "sample_per_category",
]
