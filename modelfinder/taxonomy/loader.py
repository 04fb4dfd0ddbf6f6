"""Load the curated task taxonomy from YAML."""

import logging
from pathlib import Path
from typing import Optional

import yaml

from ..errors import TaxonomyError
from .models import Taxonomy

logger = logging.getLogger(__name__)

DEFAULT_TAXONOMY_PATH = Path(__file__).parent.parent / "data" / "tasks.yaml"


def load_taxonomy(path: Optional[Path] = None) -> Taxonomy:
    """Load and validate a taxonomy file.

    Args:
        path: YAML file to read. Defaults to the packaged ``tasks.yaml``.

    Raises:
        TaxonomyError: file missing, unparsable, or failing schema validation.
    """
    path = Path(path) if path is not None else DEFAULT_TAXONOMY_PATH
    if not path.exists():
        raise TaxonomyError(f"Taxonomy file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise TaxonomyError(f"Could not parse taxonomy file {path}: {e}") from e

    taxonomy = Taxonomy.from_dict(data)
    logger.info(
        "Loaded taxonomy %s: %d categories, %d subcategories, %d gaps",
        path.name,
        len(taxonomy.categories),
        len(taxonomy.declared_subcategories),
        len(taxonomy.gaps),
    )
    return taxonomy
