from .errors import (
    ConversionError,
    ErrorKind,
    InvalidInputError,
    MetadataError,
    TunecacheError,
    classify_diagnostic,
)
from .fingerprint import fingerprint
from .job_ledger import JobLedger, JobState, Role
from .paths import EnginePaths
from .runtime import get_runtime_info

__all__ = [
    "ConversionError",
    "EnginePaths",
    "ErrorKind",
    "InvalidInputError",
    "JobLedger",
    "JobState",
    "MetadataError",
    "Role",
    "TunecacheError",
    "classify_diagnostic",
    "fingerprint",
    "get_runtime_info",
]
