"""Knowledge DB loader: body-region taxonomy and parameter panel patterns."""

import json
import os
from dataclasses import dataclass, field

from config import KNOWLEDGE_DB_PATH
from errors import ConfigurationError
from models import BodyRegion

REGION_COUNT = 21


@dataclass(frozen=True)
class Taxonomy:
    regions: tuple[BodyRegion, ...]
    synonym_groups: dict[str, tuple[str, ...]] = field(default_factory=dict)
    organ_fallbacks: dict[str, str] = field(default_factory=dict)

    def get(self, region_id: str) -> BodyRegion | None:
        for region in self.regions:
            if region.id == region_id:
                return region
        return None


def _read_json(path: str) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot load knowledge file {path}: {e}") from e


def load_taxonomy(base_path=None) -> Taxonomy:
    """Load and validate body_regions.json (21 regions, unique ids, known targets)."""
    if base_path is None:
        base_path = KNOWLEDGE_DB_PATH
    raw = _read_json(os.path.join(base_path, "body_regions.json"))

    regions = tuple(
        BodyRegion(
            id=r["id"],
            name=r["name"],
            keywords=tuple(k.lower() for k in r.get("keywords", [])),
        )
        for r in raw.get("regions", [])
    )
    ids = [r.id for r in regions]
    if len(regions) != REGION_COUNT or len(set(ids)) != len(ids):
        raise ConfigurationError(
            f"Taxonomy must hold {REGION_COUNT} uniquely-identified regions, got {len(regions)}"
        )

    synonym_groups = {
        region_id: tuple(t.lower() for t in terms)
        for region_id, terms in raw.get("synonym_groups", {}).items()
    }
    organ_fallbacks = {k.lower(): v for k, v in raw.get("organ_fallbacks", {}).items()}
    unknown = (set(synonym_groups) | set(organ_fallbacks.values())) - set(ids)
    if unknown:
        raise ConfigurationError(f"Taxonomy references unknown region ids: {sorted(unknown)}")

    return Taxonomy(regions=regions, synonym_groups=synonym_groups, organ_fallbacks=organ_fallbacks)


def load_parameter_patterns(base_path=None) -> dict:
    if base_path is None:
        base_path = KNOWLEDGE_DB_PATH
    return _read_json(os.path.join(base_path, "parameter_patterns.json"))


def load_knowledge_db(base_path=None):
    """Load the taxonomy and parameter pattern databases."""
    return {
        "taxonomy": load_taxonomy(base_path),
        "parameter_patterns": load_parameter_patterns(base_path),
    }
