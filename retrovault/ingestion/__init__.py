"""Batch admission, job tracking and the ingestion service facade."""

from .policy import BatchPolicy, AdmissionResult, validate_batch
from .jobs import BatchJob, BatchFile, JobStatus, InvalidStateTransitionError, JobNotFoundError
from .manager import BatchJobManager
from .service import IngestService

__all__ = [
    'BatchPolicy',
    'AdmissionResult',
    'validate_batch',
    'BatchJob',
    'BatchFile',
    'JobStatus',
    'InvalidStateTransitionError',
    'JobNotFoundError',
    'BatchJobManager',
    'IngestService',
]
