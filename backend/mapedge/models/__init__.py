# Namespace for ORM models and typed upstream records.
from .job import ExportJobState, JobStatus
from .record import AirtableRecord, FieldValue, ValueKind

__all__ = ["ExportJobState", "JobStatus", "AirtableRecord", "FieldValue", "ValueKind"]
