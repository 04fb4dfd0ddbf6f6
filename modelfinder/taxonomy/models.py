"""Task taxonomy schema.

The taxonomy is curated data (see ``modelfinder/data/tasks.yaml``) but the
category set is fixed: every category key must be a ``TaskCategory``. Entries
are validated when the file is loaded so that a malformed taxonomy fails
loudly instead of silently producing an under-populated reference corpus.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import TaxonomyError

logger = logging.getLogger(__name__)


class TaskCategory(str, Enum):
    """Top-level task categories the classifier can produce."""
    NATURAL_LANGUAGE_PROCESSING = "natural_language_processing"
    COMPUTER_VISION = "computer_vision"
    SPEECH_PROCESSING = "speech_processing"
    TIME_SERIES = "time_series"
    RECOMMENDATION_SYSTEMS = "recommendation_systems"
    REINFORCEMENT_LEARNING = "reinforcement_learning"
    DATA_PREPROCESSING = "data_preprocessing"


_SUBCATEGORY_KEY_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class SubcategorySpec(BaseModel):
    """One subcategory: a label, authored example phrases and keywords."""

    model_config = ConfigDict(extra="ignore")

    label: str = Field(min_length=1)
    description: str = ""
    examples: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)


class CategorySpec(BaseModel):
    """One category and its subcategories."""

    model_config = ConfigDict(extra="ignore")

    label: str = Field(min_length=1)
    description: str = ""
    subcategories: dict[str, SubcategorySpec] = Field(default_factory=dict)


@dataclass(frozen=True)
class CorpusGap:
    """A subcategory with no authored examples (unreachable by similarity)."""
    category: TaskCategory
    subcategory: str


@dataclass
class Taxonomy:
    """Validated task taxonomy."""

    categories: dict[TaskCategory, CategorySpec]
    priority_order: list[TaskCategory] = field(default_factory=list)
    gaps: list[CorpusGap] = field(default_factory=list)
    version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Taxonomy":
        """Validate a raw taxonomy mapping.

        Accepts either the file layout (``task_taxonomy`` + ``mapping_rules``)
        or a bare ``{category: {...}}`` mapping.

        Raises:
            TaxonomyError: unknown category, bad subcategory key, or a
                category/subcategory without a label.
        """
        if not isinstance(data, dict):
            raise TaxonomyError("Taxonomy must be a mapping")

        raw_categories = data.get("task_taxonomy", data)
        mapping_rules = data.get("mapping_rules") or {}
        meta = data.get("_meta") or {}

        categories: dict[TaskCategory, CategorySpec] = {}
        gaps: list[CorpusGap] = []

        for key, raw in raw_categories.items():
            if key in ("_meta", "mapping_rules", "task_taxonomy"):
                continue
            try:
                category = TaskCategory(key)
            except ValueError:
                raise TaxonomyError(
                    f"Unknown task category '{key}'. "
                    f"Valid categories: {[c.value for c in TaskCategory]}"
                ) from None

            try:
                spec = CategorySpec.model_validate(raw)
            except ValidationError as e:
                raise TaxonomyError(f"Invalid taxonomy entry for '{key}': {e}") from e

            for sub_key, sub_spec in spec.subcategories.items():
                if not _SUBCATEGORY_KEY_RE.match(sub_key):
                    raise TaxonomyError(
                        f"Invalid subcategory key '{key}.{sub_key}' (expected snake_case)"
                    )
                if not sub_spec.examples:
                    logger.warning(
                        "Subcategory %s.%s has no examples; it will be unreachable "
                        "by the embedding classifier", key, sub_key,
                    )
                    gaps.append(CorpusGap(category=category, subcategory=sub_key))

            if not spec.subcategories:
                logger.warning("Category %s has no subcategories", key)

            categories[category] = spec

        priority_order: list[TaskCategory] = []
        for key in mapping_rules.get("priority_order") or []:
            try:
                priority_order.append(TaskCategory(key))
            except ValueError:
                raise TaxonomyError(f"Unknown category '{key}' in priority_order") from None
        if not priority_order:
            priority_order = list(TaskCategory)

        return cls(
            categories=categories,
            priority_order=priority_order,
            gaps=gaps,
            version=meta.get("version"),
        )

    @property
    def declared_categories(self) -> list[TaskCategory]:
        """Every category the system claims to support."""
        return list(TaskCategory)

    @property
    def declared_subcategories(self) -> list[tuple[TaskCategory, str]]:
        return [
            (category, sub_key)
            for category, spec in self.categories.items()
            for sub_key in spec.subcategories
        ]

    def category_label(self, category: str) -> str:
        spec = self.categories.get(TaskCategory(category))
        return spec.label if spec else str(category)

    def subcategory_label(self, category: str, subcategory: str) -> str:
        spec = self.categories.get(TaskCategory(category))
        if spec and subcategory in spec.subcategories:
            return spec.subcategories[subcategory].label
        return subcategory
