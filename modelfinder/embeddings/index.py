"""Immutable reference index: examples plus their stacked embedding matrix."""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

from ..taxonomy import ReferenceSeed, TaskCategory


@dataclass(frozen=True, eq=False)
class ReferenceExample:
    """A reference seed with its unit-norm embedding attached."""
    text: str
    category: TaskCategory
    subcategory: str
    category_label: str
    subcategory_label: str
    source: str
    embedding: np.ndarray

    @classmethod
    def from_seed(cls, seed: ReferenceSeed, embedding: np.ndarray) -> "ReferenceExample":
        return cls(
            text=seed.text,
            category=seed.category,
            subcategory=seed.subcategory,
            category_label=seed.category_label,
            subcategory_label=seed.subcategory_label,
            source=seed.source,
            embedding=embedding,
        )


@dataclass(frozen=True)
class NeighborMatch:
    """One retained neighbour of a query."""
    text: str
    category: TaskCategory
    subcategory: str
    label: str
    similarity: float
    category_label: str = ""
    index: int = -1

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "category": self.category.value,
            "subcategory": self.subcategory,
            "label": self.label,
            "similarity": round(self.similarity, 4),
        }


class ReferenceIndex:
    """Reference examples and an ``(n, d)`` matrix of their embeddings.

    Never mutated after construction; ``extend`` and ``subset`` return new
    indexes, so a classifier holding the old one keeps a consistent view.
    """

    def __init__(
        self,
        examples: Sequence[ReferenceExample],
        dimensions: Optional[int] = None,
    ):
        self._examples = tuple(examples)
        if self._examples:
            matrix = np.vstack([e.embedding for e in self._examples]).astype(np.float32)
        else:
            matrix = np.zeros((0, dimensions or 0), dtype=np.float32)
        matrix.setflags(write=False)
        self._matrix = matrix

    def __len__(self) -> int:
        return len(self._examples)

    @property
    def examples(self) -> tuple[ReferenceExample, ...]:
        return self._examples

    @property
    def matrix(self) -> np.ndarray:
        return self._matrix

    @property
    def dimensions(self) -> int:
        return self._matrix.shape[1]

    @property
    def categories(self) -> set[TaskCategory]:
        return {e.category for e in self._examples}

    def similarities(self, query: np.ndarray) -> np.ndarray:
        """Cosine similarity of ``query`` to every reference (dot product)."""
        return self._matrix @ np.asarray(query, dtype=np.float32)

    def nearest(
        self,
        query: np.ndarray,
        top_k: int,
        exclude: Optional[Iterable[int]] = None,
    ) -> list[NeighborMatch]:
        """The ``top_k`` most similar references, most similar first.

        Indices in ``exclude`` are skipped (leave-one-out evaluation). Equal
        similarities keep corpus order.
        """
        if top_k < 1:
            raise ValueError("top_k must be at least 1")
        if not self._examples:
            return []

        sims = self.similarities(query).astype(np.float64)
        excluded = set(exclude or ())
        order = np.argsort(-sims, kind="stable")

        matches: list[NeighborMatch] = []
        for i in order:
            i = int(i)
            if i in excluded:
                continue
            example = self._examples[i]
            matches.append(NeighborMatch(
                text=example.text,
                category=example.category,
                subcategory=example.subcategory,
                label=example.subcategory_label,
                similarity=float(sims[i]),
                category_label=example.category_label,
                index=i,
            ))
            if len(matches) == top_k:
                break
        return matches

    def subset(self, indices: Iterable[int]) -> "ReferenceIndex":
        """A new index over the given positions, in the given order."""
        return ReferenceIndex(
            [self._examples[i] for i in indices], dimensions=self.dimensions,
        )

    def extend(self, examples: Sequence[ReferenceExample]) -> "ReferenceIndex":
        return ReferenceIndex(
            self._examples + tuple(examples), dimensions=self.dimensions,
        )
