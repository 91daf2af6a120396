"""
Profile / Report Persistence Interfaces
=========================================
The request-handling layer owns real persistence; the pipeline only needs:
  ProfileStore  read  {conditions, report types, demographics}
                write {conditions (append-only net-new), body-impact snapshot (full replace)}
  ReportStore   read  reports for a subject
In-memory implementations back tests and embedded use.
"""

import copy
import threading
from abc import ABC, abstractmethod

from models import BodyImpactSnapshot, ConditionMention, Report, SubjectProfile


class ProfileStore(ABC):
    @abstractmethod
    def get_profile(self, subject_id: str) -> SubjectProfile | None:
        ...

    @abstractmethod
    def add_conditions(self, subject_id: str, conditions: list[ConditionMention]):
        """Append conditions; existing entries are never modified or removed."""

    @abstractmethod
    def replace_snapshot(self, subject_id: str, snapshot: BodyImpactSnapshot):
        """Replace (not merge) the subject's body-impact snapshot."""


class ReportStore(ABC):
    @abstractmethod
    def list_reports(self, subject_id: str) -> list[Report]:
        ...


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: list[SubjectProfile] | None = None):
        self._lock = threading.Lock()
        self._profiles = {p.subject_id: copy.deepcopy(p) for p in (profiles or [])}

    def save_profile(self, profile: SubjectProfile):
        with self._lock:
            self._profiles[profile.subject_id] = copy.deepcopy(profile)

    def get_profile(self, subject_id: str) -> SubjectProfile | None:
        with self._lock:
            profile = self._profiles.get(subject_id)
            return copy.deepcopy(profile) if profile else None

    def add_conditions(self, subject_id: str, conditions: list[ConditionMention]):
        with self._lock:
            profile = self._profiles.get(subject_id)
            if profile is None:
                raise KeyError(subject_id)
            profile.conditions.extend(copy.deepcopy(conditions))

    def replace_snapshot(self, subject_id: str, snapshot: BodyImpactSnapshot):
        with self._lock:
            profile = self._profiles.get(subject_id)
            if profile is None:
                raise KeyError(subject_id)
            profile.body_impact = copy.deepcopy(snapshot)


class InMemoryReportStore(ReportStore):
    def __init__(self, reports: list[Report] | None = None):
        self._reports: dict[str, list[Report]] = {}
        for report in reports or []:
            self.add_report(report)

    def add_report(self, report: Report):
        self._reports.setdefault(report.subject_id, []).append(report)

    def list_reports(self, subject_id: str) -> list[Report]:
        return list(self._reports.get(subject_id, []))
