"""
Stage 3A: Condition Inference (LLM)
=====================================
Suggests probable diagnosed conditions from abnormal parameters.

Input:  ExtractedParameters (only those flagged abnormal are used) + optional SubjectInfo
Output: list of condition name strings (no dedup / casing normalization)

Parsing is defensive: the first JSON array in the response is used; anything
that is not an array of strings yields []. This stage never raises.

Deterministic panel patterns (parameter_patterns.json) are matched first and
sent along as context hints.
"""

import logging
import re

from config import INFERENCE_TEMPERATURE
from errors import InferenceFailure
from llm_client import LLMClient
from models import ExtractedParameter, SubjectInfo
from prompts.system_prompts import CONDITION_INFERENCE

logger = logging.getLogger("body_impact")


def parse_condition_list(parsed) -> list[str]:
    """A JSON array of strings → trimmed non-empty labels; anything else → []."""
    if not isinstance(parsed, list):
        return []
    if any(not isinstance(item, str) for item in parsed):
        return []
    return [item.strip() for item in parsed if item.strip()]


def _term_matches(term: str, name_lower: str) -> bool:
    """Short panel terms (<=3 chars, e.g. "ldl") need word boundaries."""
    if len(term) <= 3:
        return bool(re.search(r'\b' + re.escape(term) + r'\b', name_lower))
    return term in name_lower or (len(name_lower) > 3 and name_lower in term)


def identify_parameter_patterns(abnormal_parameters: list[ExtractedParameter], patterns_db: dict) -> list[dict]:
    """Panels with at least `min_matches` abnormal members, e.g. LDL + triglycerides → Hyperlipidemia."""
    min_matches = patterns_db.get("min_matches", 2)
    detected = []
    for pattern in patterns_db.get("patterns", []):
        terms = [t.lower() for t in pattern.get("parameters", [])]
        matching = [
            p.name for p in abnormal_parameters
            if any(_term_matches(t, p.normalized_name) for t in terms)
        ]
        if len(matching) >= min_matches:
            detected.append({
                "condition": pattern["condition"],
                "description": pattern.get("description", ""),
                "matchingParameters": matching,
            })
    return detected


def format_parameters(parameters: list[ExtractedParameter]) -> str:
    lines = []
    for i, p in enumerate(parameters, 1):
        unit = f" {p.unit}" if p.unit else ""
        rng = f" (Normal: {p.normal_range})" if p.normal_range else ""
        lines.append(f"{i}. {p.name}: {p.value}{unit}{rng}")
    return "\n".join(lines)


def infer_conditions(llm: LLMClient, abnormal_parameters: list[ExtractedParameter],
                     subject_info: SubjectInfo | None = None, patterns_db: dict | None = None) -> list[str]:
    """
    Ask the capability which conditions the abnormal values indicate.

    Returns:
        Condition names as returned (order kept), [] on any failure.
    """
    abnormal = [p for p in abnormal_parameters if p.is_abnormal]
    if not abnormal:
        return []

    sections = [f"ABNORMAL PARAMETERS:\n{format_parameters(abnormal)}"]
    if subject_info and subject_info.describe():
        sections.append(f"SUBJECT INFO:\n{subject_info.describe()}")
    if patterns_db:
        hints = identify_parameter_patterns(abnormal, patterns_db)
        if hints:
            hint_lines = "\n".join(
                f"- {h['condition']}: {', '.join(h['matchingParameters'])}" for h in hints
            )
            sections.append(f"PARAMETER PATTERNS DETECTED:\n{hint_lines}")

    try:
        parsed = llm.query_json_array(
            system_prompt=CONDITION_INFERENCE,
            user_message="\n\n".join(sections),
            temperature=INFERENCE_TEMPERATURE,
            max_tokens=1000,
        )
        if parsed is None:
            raise InferenceFailure("No JSON array in condition inference response")
        conditions = parse_condition_list(parsed)
        if parsed and not conditions:
            raise InferenceFailure("Condition inference response is not a string array")
        return conditions
    except Exception as e:
        logger.warning(f"Condition inference failed (treated as empty): {e}")
        return []
