"""
Services built on the storage registry.
"""

from noverna.services.admission import AdmissionResult, AdmissionService, normalize_license
from noverna.services.messages import ErrorCode, get_message

__all__ = [
    "AdmissionResult",
    "AdmissionService",
    "ErrorCode",
    "get_message",
    "normalize_license",
]
