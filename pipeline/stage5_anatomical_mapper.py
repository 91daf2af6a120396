"""
Stage 5: Anatomical Mapper (Deterministic Code)
=================================================
Folds free-text body-part mentions onto the closed 21-region taxonomy.
Pure and order-independent: the same multiset of mentions in any order
yields the same aggregated result.

Input:  BodyPartImpact mentions (any upstream source) + Taxonomy
Output: one AggregatedBodyImpact per region with >= 1 matching mention

Matching Rules (ordered rule table; first rule with any matching region wins,
regions tried in taxonomy order within a rule):
  1. exact            - mention equals region name or id (case-insensitive)
  2. keyword          - mention contains a region keyword
  3. reverse_keyword  - a region keyword contains the mention
  4. synonym          - synonym cluster term in mention ("nephro*" = stem)
  5. organ_fallback   - organ noun in mention → fixed region
  Rules 2, 4 and 5 are plain substring containment. Rule 3 needs word
  boundaries when the mention itself is short (<=3 chars).
  No match → MappingMiss (dropped, logged).

Aggregation per region:
  severity    = label of max score (low=1, medium=2, high=3)
  confidence  = max
  conditions / parameters = set union
  description = distinct descriptions, appended only if not already a substring,
                folded in canonical order (severity desc, confidence desc, text)
"""

import logging
import re
from datetime import datetime
from functools import partial

from config import SEVERITY_SCORES
from errors import MappingMiss
from knowledge_loader import Taxonomy, load_taxonomy
from models import AggregatedBodyImpact, BodyPartImpact, BodyRegion, utcnow

logger = logging.getLogger("body_impact")

_SCORE_TO_SEVERITY = {score: label for label, score in SEVERITY_SCORES.items()}
_WS_RE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", str(text or "").strip().lower())


def _keyword_in_text(keyword: str, text_lower: str) -> bool:
    return bool(keyword) and bool(text_lower) and keyword in text_lower


def _mention_in_keyword(text_lower: str, keyword: str) -> bool:
    """
    Reverse containment. A short mention (<=3 chars) must sit on word
    boundaries inside the keyword (e.g., "ear" must not match "heart").
    """
    if not text_lower or not keyword:
        return False
    if len(text_lower) <= 3:
        return bool(re.search(r'\b' + re.escape(text_lower) + r'\b', keyword))
    return text_lower in keyword


def _synonym_in_text(term: str, text_lower: str) -> bool:
    # "nephro*" is a stem; containment already covers every completion
    return _keyword_in_text(term.rstrip("*"), text_lower)


# ------------------------------------------------------------------
#  Rules: (region, taxonomy, text) -> bool, bound per region to (text) -> bool
# ------------------------------------------------------------------

def _rule_exact(region: BodyRegion, taxonomy: Taxonomy, text: str) -> bool:
    return text == region.name.lower() or text == region.id


def _rule_keyword(region: BodyRegion, taxonomy: Taxonomy, text: str) -> bool:
    return any(_keyword_in_text(kw, text) for kw in region.keywords)


def _rule_reverse_keyword(region: BodyRegion, taxonomy: Taxonomy, text: str) -> bool:
    return any(_mention_in_keyword(text, kw) for kw in region.keywords)


def _rule_synonym(region: BodyRegion, taxonomy: Taxonomy, text: str) -> bool:
    return any(_synonym_in_text(t, text) for t in taxonomy.synonym_groups.get(region.id, ()))


def _rule_organ_fallback(region: BodyRegion, taxonomy: Taxonomy, text: str) -> bool:
    return any(
        target == region.id and _keyword_in_text(organ, text)
        for organ, target in taxonomy.organ_fallbacks.items()
    )


MATCH_RULES = (
    ("exact", _rule_exact),
    ("keyword", _rule_keyword),
    ("reverse_keyword", _rule_reverse_keyword),
    ("synonym", _rule_synonym),
    ("organ_fallback", _rule_organ_fallback),
)


def build_rule_table(taxonomy: Taxonomy) -> list[tuple[str, BodyRegion, object]]:
    """Flattened (rule name, region, predicate) list in evaluation order."""
    return [
        (rule_name, region, partial(rule, region, taxonomy))
        for rule_name, rule in MATCH_RULES
        for region in taxonomy.regions
    ]


class AnatomicalMapper:
    """Resolves mentions to regions and aggregates them."""

    def __init__(self, taxonomy: Taxonomy | None = None):
        self.taxonomy = taxonomy or load_taxonomy()
        self.rules = build_rule_table(self.taxonomy)

    def resolve(self, part_name: str) -> tuple[BodyRegion, str] | None:
        """(region, rule name) for a free-text part name, or None."""
        text = _normalize(part_name)
        if not text:
            return None
        for rule_name, region, predicate in self.rules:
            if predicate(text):
                return region, rule_name
        return None

    def map_with_misses(self, mentions: list[BodyPartImpact],
                        now: datetime | None = None) -> tuple[list[AggregatedBodyImpact], list[MappingMiss]]:
        contributions: dict[str, list[BodyPartImpact]] = {}
        misses = []
        for mention in mentions:
            resolved = self.resolve(mention.part_name)
            if resolved is None:
                miss = MappingMiss(mention.part_name)
                logger.warning(f"Unmapped body part dropped: '{mention.part_name}'")
                misses.append(miss)
                continue
            region, _ = resolved
            contributions.setdefault(region.id, []).append(mention)

        now = now or utcnow()
        aggregated = [
            _aggregate(region, contributions[region.id], now)
            for region in self.taxonomy.regions
            if region.id in contributions
        ]
        return aggregated, misses

    def map(self, mentions: list[BodyPartImpact], now: datetime | None = None) -> list[AggregatedBodyImpact]:
        return self.map_with_misses(mentions, now)[0]


def _score(mention: BodyPartImpact) -> int:
    return SEVERITY_SCORES.get(str(mention.severity).lower(), SEVERITY_SCORES["low"])


def _aggregate(region: BodyRegion, mentions: list[BodyPartImpact], now: datetime) -> AggregatedBodyImpact:
    ordered = sorted(mentions, key=lambda m: (-_score(m), -m.confidence, m.description or ""))

    description = ""
    for m in ordered:
        text = (m.description or "").strip()
        if not text or text in description:
            continue
        description = f"{description} {text}" if description else text

    conditions = set()
    parameters = set()
    for m in mentions:
        conditions.update(c for c in m.related_conditions if c)
        parameters.update(p for p in m.related_parameters if p)

    return AggregatedBodyImpact(
        part_id=region.id,
        part_name=region.name,
        severity=_SCORE_TO_SEVERITY[max(_score(m) for m in mentions)],
        impact_description=description,
        related_conditions=conditions,
        related_parameters=parameters,
        confidence=max(m.confidence for m in mentions),
        last_updated=now,
    )


def resolve_region(part_name: str, taxonomy: Taxonomy | None = None) -> BodyRegion | None:
    resolved = AnatomicalMapper(taxonomy).resolve(part_name)
    return resolved[0] if resolved else None


def map_mentions(mentions: list[BodyPartImpact], taxonomy: Taxonomy | None = None,
                 now: datetime | None = None) -> list[AggregatedBodyImpact]:
    return AnatomicalMapper(taxonomy).map(mentions, now)
