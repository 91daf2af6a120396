"""
Body-Impact Data Model
========================
Typed entities exchanged between pipeline stages.

  Report / ParsedDataItem      -> report persistence (read side)
  ExtractedParameter           -> one clinical value, from scan or structured data
  ConditionMention             -> condition label + provenance tag
  BodyPartImpact               -> one unmapped mention (pre-aggregation)
  AggregatedBodyImpact         -> one affected BodyRegion (post-aggregation)
  BodyImpactSnapshot           -> full, replaceable result of one run
  AnalysisPatternEntry         -> pattern cache row, keyed (subject_id, report_id)
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone

from config import (
    MAX_PARAMETERS_FOR_INFERENCE,
    MAX_REPORT_AGE_DAYS,
    MAX_REPORTS_TO_SCAN,
    PRIORITIZE_RECENT,
    RESCAN_MAX_AGE_DAYS,
)

SEVERITY_LEVELS = ("low", "medium", "high")

# Condition provenance tags (traceability only, never precedence)
PROVENANCE_REPORT = "report"
PROVENANCE_AI_PARAMETER = "ai_parameter"
PROVENANCE_AI_REPORT_TYPE = "ai_report_type"
PROVENANCE_EXISTING = "existing"
PROVENANCES = (
    PROVENANCE_REPORT, PROVENANCE_AI_PARAMETER, PROVENANCE_AI_REPORT_TYPE, PROVENANCE_EXISTING,
)

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value) -> datetime | None:
    """Coerce a datetime, date or ISO string to an aware UTC datetime (naive = UTC)."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_number(value) -> float | None:
    """First numeric token of a value ("7.2 %" -> 7.2). None when absent."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    m = _NUMBER_RE.search(str(value).replace(",", ""))
    return float(m.group(0)) if m else None


@dataclass(frozen=True)
class BodyRegion:
    id: str
    name: str
    keywords: tuple[str, ...]


@dataclass
class ExtractedParameter:
    name: str
    value: float | str | None
    unit: str | None = None
    normal_range: str | None = None
    is_abnormal: bool = False
    source_report_id: str | None = None
    observed_at: datetime | None = None

    @property
    def normalized_name(self) -> str:
        return self.name.strip().lower()

    @property
    def numeric_value(self) -> float | None:
        return parse_number(self.value)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["observed_at"] = _iso(self.observed_at)
        return d


@dataclass
class ConditionMention:
    condition: str
    provenance: str = PROVENANCE_EXISTING
    date: datetime | None = None

    def to_dict(self) -> dict:
        return {"condition": self.condition, "source": self.provenance, "date": _iso(self.date)}


@dataclass
class BodyPartImpact:
    part_name: str
    severity: str = "low"
    description: str = ""
    related_conditions: list[str] = field(default_factory=list)
    related_parameters: list[str] = field(default_factory=list)
    confidence: float = 0.5


@dataclass
class AggregatedBodyImpact:
    part_id: str
    part_name: str
    severity: str
    impact_description: str
    related_conditions: set[str] = field(default_factory=set)
    related_parameters: set[str] = field(default_factory=set)
    confidence: float = 0.0
    last_updated: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "partId": self.part_id,
            "partName": self.part_name,
            "severity": self.severity,
            "impactDescription": self.impact_description,
            "relatedConditions": sorted(self.related_conditions),
            "relatedParameters": sorted(self.related_parameters),
            "confidence": self.confidence,
            "lastUpdated": _iso(self.last_updated),
        }


@dataclass
class BodyImpactSnapshot:
    last_analyzed_at: datetime | None = None
    body_parts: list[AggregatedBodyImpact] = field(default_factory=list)
    metadata: dict = field(default_factory=lambda: {
        "totalConditionsAnalyzed": 0,
        "totalParametersAnalyzed": 0,
    })

    def to_dict(self) -> dict:
        return {
            "lastAnalyzedAt": _iso(self.last_analyzed_at),
            "bodyParts": [bp.to_dict() for bp in self.body_parts],
            "metadata": dict(self.metadata),
        }


@dataclass
class AnalysisPatternEntry:
    report_id: str
    subject_id: str
    conditions: list[str] = field(default_factory=list)
    parameter_names: list[str] = field(default_factory=list)
    scanned_at: datetime = field(default_factory=utcnow)


@dataclass
class ParsedDataItem:
    """Pre-existing structured value stored with a report."""
    keyword: str
    value: float | str | None
    unit: str | None = None
    normal_range: str | None = None


@dataclass
class Report:
    report_id: str
    subject_id: str
    report_type: str | None = None
    report_date: datetime | None = None
    upload_date: datetime | None = None
    file_ref: str | None = None
    file_type: str | None = None
    parsed_data: list[ParsedDataItem] = field(default_factory=list)
    parameters: list[ExtractedParameter] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)

    @property
    def effective_date(self) -> datetime | None:
        return to_utc(self.report_date) or to_utc(self.upload_date)

    @property
    def parameter_count(self) -> int:
        return len(self.parsed_data) + len(self.parameters)


@dataclass
class ReportFile:
    report_id: str
    file_ref: str
    file_type: str | None = None


@dataclass
class ExtractedDocument:
    report_id: str
    extracted_text: str
    conditions: list[str] = field(default_factory=list)
    parameters: list[ExtractedParameter] = field(default_factory=list)
    scanned_at: datetime = field(default_factory=utcnow)


@dataclass
class SubjectInfo:
    age: int | None = None
    gender: str | None = None

    def describe(self) -> str:
        parts = []
        if self.age is not None:
            parts.append(f"Age: {self.age}")
        if self.gender:
            parts.append(f"Gender: {self.gender}")
        return ", ".join(parts)


@dataclass
class SubjectProfile:
    subject_id: str
    conditions: list[ConditionMention] = field(default_factory=list)
    report_types: list[str] = field(default_factory=list)
    date_of_birth: date | None = None
    gender: str | None = None
    body_impact: BodyImpactSnapshot | None = None

    def age(self, today: date | None = None) -> int | None:
        if self.date_of_birth is None:
            return None
        today = today or date.today()
        dob = self.date_of_birth
        years = today.year - dob.year
        if (today.month, today.day) < (dob.month, dob.day):
            years -= 1
        return years

    def subject_info(self) -> SubjectInfo:
        return SubjectInfo(age=self.age(), gender=self.gender)


@dataclass
class OptimizationConfig:
    max_reports_to_scan: int = MAX_REPORTS_TO_SCAN
    max_parameters_for_inference: int = MAX_PARAMETERS_FOR_INFERENCE
    prioritize_recent: bool = PRIORITIZE_RECENT
    use_caching: bool = True
    max_report_age_days: int = MAX_REPORT_AGE_DAYS
    rescan_max_age_days: int = RESCAN_MAX_AGE_DAYS
