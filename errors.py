"""
Body-Impact Error Taxonomy
============================
ConfigurationError   -> required capability unavailable, aborts the run
ExtractionFailure    -> one report file skipped, run continues
InferenceFailure     -> one inference sub-call treated as empty, run continues
MappingMiss          -> one mention matched no region, dropped
PersistenceFailure   -> final write failed, run result still attached
"""


class BodyImpactError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(BodyImpactError):
    pass


class ExtractionFailure(BodyImpactError):
    def __init__(self, message: str, report_id: str | None = None, details: dict | None = None):
        self.report_id = report_id
        super().__init__(message, details)


class InferenceFailure(BodyImpactError):
    pass


class MappingMiss(BodyImpactError):
    def __init__(self, part_name: str):
        self.part_name = part_name
        super().__init__(f"No body region matches '{part_name}'")


class PersistenceFailure(BodyImpactError):
    """Final write failed. `result` holds the computed (unpersisted) run output."""

    def __init__(self, message: str, result: dict | None = None, details: dict | None = None):
        self.result = result
        super().__init__(message, details)


class SubjectNotFoundError(BodyImpactError, LookupError):
    def __init__(self, subject_id: str):
        self.subject_id = subject_id
        super().__init__(f"No profile found for subject {subject_id}")
