"""
Exception hierarchy shared by the pipeline, the adapters and the ledger.
"""


class PipelineError(Exception):
    """Base class for every error raised by the core modules"""
    pass


class DownloadError(PipelineError):
    """Download request rejected or the download service was unreachable"""
    pass


class TranscriptionError(PipelineError):
    """Transcription request rejected or reported as failed"""
    pass


class TranscriptionTimeoutError(TranscriptionError):
    """Transcription still processing after the polling window"""
    pass


class ProcessingError(PipelineError):
    """Custom exception for AI processing failures"""
    pass


class APIError(ProcessingError):
    """OpenAI API related errors (timeouts, rate limits)"""
    pass


class ChunkingError(ProcessingError):
    """Text chunking errors"""
    pass


class CreditError(PipelineError):
    """Credit ledger errors"""
    pass


class InsufficientCreditsError(CreditError):
    """User balance does not cover the requested charge"""
    pass


class StorageError(PipelineError):
    """Persistence layer failure (retried by the pipeline)"""
    pass


class JobNotFoundError(PipelineError):
    """No video job with the given identifier"""
    pass


class InvalidTransitionError(PipelineError):
    """Stage function invoked for a job in the wrong status"""

    def __init__(self, job_id: str, status: str, expected: str):
        self.job_id = job_id
        self.status = status
        self.expected = expected
        super().__init__(f"Job {job_id} is '{status}', expected '{expected}'")
