"""
Video processing state machine

pending -> downloaded -> transcribing -> completed, with failed reachable from
every non-terminal state. Each stage reads the persisted job, calls one
external service, and writes the outcome back. A failed stage refunds the
submission estimate before the error is re-raised.
"""

import asyncio
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import structlog
from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from config import AppConfig
from core.credits import CreditLedger
from core.download import DownloadService
from core.errors import (
    CreditError,
    DownloadError,
    InsufficientCreditsError,
    InvalidTransitionError,
    JobNotFoundError,
    ProcessingError,
    StorageError,
    TranscriptionError,
    TranscriptionTimeoutError,
)
from core.models import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    VideoJob,
    VideoStatus,
    is_valid_transition,
    new_id,
)
from core.process import InsightEngine
from core.storage import Storage, page_bounds
from core.transcribe import TranscriptionService, TranscriptionStatus, STATUS_COMPLETED

logger = structlog.get_logger(__name__)

ESTIMATE_REFERENCE = "submission_estimate"
CHARGE_REFERENCE = "video_processing"
REFUND_SUBMISSION = "refund_submission_failed"
REFUND_DOWNLOAD = "refund_download_failed"
REFUND_TRANSCRIPTION = "refund_transcription_failed"
REFUND_PROCESSING = "refund_processing_failed"

FINALIZE_FAILED_MESSAGE = "Insufficient credits to finalize processing"
MAX_PAGE_SIZE = 100


class StageResult(BaseModel):
    """Job snapshot after one stage attempt"""

    job: VideoJob
    transitioned: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> VideoStatus:
        return self.job.status


def validate_video_url(url: str) -> str:
    url = (url or '').strip()
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise ValueError(f"Invalid video URL: {url!r}")
    return url


class VideoPipeline:
    """Drives submitted videos through download, transcription and synthesis"""

    def __init__(
        self,
        storage: Storage,
        ledger: CreditLedger,
        download_service: DownloadService,
        transcription_service: TranscriptionService,
        insight_engine: InsightEngine,
        settings: AppConfig
    ):
        self.storage = storage
        self.ledger = ledger
        self.download_service = download_service
        self.transcription_service = transcription_service
        self.insight_engine = insight_engine
        self.settings = settings

    # ── Persistence helpers ──────────────────────────────────────────

    def _write_retrying(self) -> AsyncRetrying:
        storage_settings = self.settings.storage
        return AsyncRetrying(
            stop=stop_after_attempt(storage_settings.write_retries),
            wait=wait_incrementing(start=storage_settings.write_backoff,
                                   increment=storage_settings.write_backoff),
            retry=retry_if_exception_type(StorageError),
            before_sleep=lambda rs: logger.warning(
                "Persistence write failed, retrying",
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()),
            ),
            reraise=True
        )

    async def _save(self, job_id: str, **fields) -> VideoJob:
        new_status = fields.get('status')
        if new_status is not None:
            current = await self._load(job_id)
            if not is_valid_transition(current.status, new_status):
                raise InvalidTransitionError(job_id, current.status.value, new_status.value)
        async for attempt in self._write_retrying():
            with attempt:
                return await self.storage.update_job(job_id, **fields)

    async def _load(self, job_id: str, expected: Optional[VideoStatus] = None) -> VideoJob:
        job = await self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Video job not found: {job_id}")
        if expected is not None and job.status != expected:
            raise InvalidTransitionError(job_id, job.status.value, expected.value)
        return job

    # ── Credit compensation ──────────────────────────────────────────

    async def _refund_estimate(self, job: VideoJob, reference_type: str) -> Optional[CreditTransaction]:
        """Return the submission estimate unless it was already settled or refunded"""
        estimate = await self.storage.find_latest_by_reference(job.id, ESTIMATE_REFERENCE)
        if estimate is None or estimate.status != TransactionStatus.PENDING:
            logger.info("No pending estimate to refund", job_id=job.id)
            return None

        related = await self.storage.list_transactions_by_reference(job.id)
        if any(tx.type == TransactionType.REFUND and (tx.reference_type or '').startswith('refund_')
               for tx in related):
            logger.info("Estimate already refunded", job_id=job.id)
            return None

        refund = await self.ledger.refund(
            job.user_id,
            abs(estimate.amount),
            f"Refund for failed video processing: {job.video_url}",
            reference_id=job.id,
            reference_type=reference_type,
            video_id=job.id,
        )
        if refund is not None:
            await self.ledger.amend(estimate.id, status=TransactionStatus.CANCELLED)
            logger.info("Estimate refunded", job_id=job.id, amount=refund.amount,
                        reason=reference_type)
        return refund

    async def _fail(self, job: VideoJob, message: str, refund_type: Optional[str],
                    **fields) -> VideoJob:
        logger.error("Video job failed", job_id=job.id, status=job.status.value, error=message)
        failed = await self._save(
            job.id,
            status=VideoStatus.FAILED,
            error_message=message,
            dashboard=None,
            **fields
        )
        if refund_type is not None:
            await self._refund_estimate(failed, refund_type)
        return failed

    async def _finalize_charge(self, job: VideoJob, tokens_used: int) -> Optional[CreditTransaction]:
        """Settle the estimate at the real cost; None when the user cannot cover it.

        The settled row keeps ``type=spend``: the transaction types have no
        separate finalized member, so the finalized category is carried by
        ``reference_type="video_processing"`` instead.
        """
        existing = await self.storage.find_latest_by_reference(job.id, CHARGE_REFERENCE)
        if existing is not None:
            return existing

        cost = self.ledger.calculate_cost(tokens_used)
        description = f"Video processing ({tokens_used} tokens)"
        estimate = await self.storage.find_latest_by_reference(job.id, ESTIMATE_REFERENCE)

        if estimate is not None and estimate.status == TransactionStatus.PENDING:
            charge = await self.ledger.amend(
                estimate.id,
                amount=-cost,
                tokens_used=tokens_used,
                status=TransactionStatus.COMPLETED,
                reference_type=CHARGE_REFERENCE,
                description=description,
            )
            if charge is None:
                # estimate stays charged as-is
                await self.ledger.amend(
                    estimate.id,
                    tokens_used=tokens_used,
                    status=TransactionStatus.COMPLETED,
                    description=f"{description}, not fully covered",
                )
        else:
            charge = await self.ledger.spend(
                job.user_id,
                cost,
                description,
                reference_id=job.id,
                reference_type=CHARGE_REFERENCE,
                tokens_used=tokens_used,
                video_id=job.id,
            )

        if charge is not None:
            logger.info("Processing charge finalized", job_id=job.id, tokens_used=tokens_used,
                        cost=cost, estimate=abs(estimate.amount) if estimate else None)
        return charge

    # ── Caller-facing operations ─────────────────────────────────────

    async def submit_video(self, user_id: str, url: str) -> VideoJob:
        """Reserve the estimate and create a pending job"""
        url = validate_video_url(url)
        if await self.storage.get_user(user_id) is None:
            raise CreditError(f"Unknown user: {user_id}")

        job = VideoJob(id=new_id(), user_id=user_id, video_url=url)
        estimate = self.settings.credits.submission_estimate

        reservation = await self.ledger.spend(
            user_id,
            estimate,
            f"Video submission: {url}",
            reference_id=job.id,
            reference_type=ESTIMATE_REFERENCE,
            video_id=job.id,
            status=TransactionStatus.PENDING,
        )
        if reservation is None:
            raise InsufficientCreditsError(
                f"Insufficient credits: {estimate} required to submit a video"
            )

        try:
            async for attempt in self._write_retrying():
                with attempt:
                    await self.storage.create_job(job)
        except StorageError:
            await self._refund_estimate(job, REFUND_SUBMISSION)
            raise

        logger.info("Video submitted", job_id=job.id, user_id=user_id, estimate=estimate)
        return job

    async def get_video(self, job_id: str) -> Optional[VideoJob]:
        return await self.storage.get_job(job_id)

    async def list_videos(self, user_id: str, status: Optional[VideoStatus] = None,
                          limit: Optional[int] = 20, offset: Optional[int] = 0
                          ) -> Tuple[List[VideoJob], int]:
        limit, offset = page_bounds(limit, offset, MAX_PAGE_SIZE)
        jobs = await self.storage.list_jobs(user_id=user_id, status=status,
                                            limit=limit, offset=offset)
        total = await self.storage.count_jobs(user_id=user_id, status=status)
        return jobs, total

    async def start_download(self, job_id: str) -> VideoJob:
        job = await self._load(job_id, VideoStatus.PENDING)
        logger.info("Starting download", job_id=job.id, url=job.video_url)

        try:
            result = await self.download_service.request_download(job.video_url)
            if not result.success:
                raise DownloadError("Download service rejected the video")
        except DownloadError as e:
            await self._fail(job, f"Download failed: {e}", REFUND_DOWNLOAD)
            raise

        job = await self._save(
            job.id,
            status=VideoStatus.DOWNLOADED,
            service_video_id=result.video_id,
            title=result.title,
            duration=result.duration,
            thumbnail=result.thumbnail,
            download_url=result.download_url,
        )
        logger.info("Download completed", job_id=job.id, service_video_id=job.service_video_id)
        return job

    async def start_transcription(self, job_id: str) -> VideoJob:
        job = await self._load(job_id, VideoStatus.DOWNLOADED)
        logger.info("Starting transcription", job_id=job.id,
                    service_video_id=job.service_video_id)

        try:
            if not job.service_video_id:
                raise TranscriptionError("Job has no service video id")
            result = await self.transcription_service.request_transcription(job.service_video_id)
            if not result.success:
                raise TranscriptionError("Transcription service rejected the request")
        except TranscriptionError as e:
            await self._fail(job, f"Transcription failed: {e}", REFUND_TRANSCRIPTION)
            raise

        job = await self._save(
            job.id,
            status=VideoStatus.TRANSCRIBING,
            transcription_id=result.transcription_id,
        )
        logger.info("Transcription started", job_id=job.id,
                    transcription_id=job.transcription_id)
        return job

    async def _fetch_status(self, transcription_id: str, wait: bool) -> TranscriptionStatus:
        if wait:
            text = await self.transcription_service.poll_transcription_status(transcription_id)
            if text:
                return TranscriptionStatus(success=True, status=STATUS_COMPLETED, text=text)
        return await self.transcription_service.get_status(transcription_id)

    async def check_transcription_status(self, job_id: str, wait: bool = False) -> StageResult:
        """Check the transcription once (or poll with wait=True) and finish the job when ready.

        While the service still reports processing nothing is written.
        """
        job = await self._load(job_id, VideoStatus.TRANSCRIBING)

        try:
            if not job.transcription_id:
                raise TranscriptionError("Job has no transcription id")
            status = await self._fetch_status(job.transcription_id, wait)
        except TranscriptionError as e:
            await self._fail(job, f"Transcription failed: {e}", REFUND_TRANSCRIPTION)
            raise

        if status.is_failed:
            failed = await self._fail(job, "Transcription failed on the video service",
                                      REFUND_TRANSCRIPTION)
            return StageResult(job=failed, transitioned=True, error=failed.error_message)

        if not status.is_completed:
            logger.debug("Transcription still processing", job_id=job.id, status=status.status)
            return StageResult(job=job)

        text = status.text or ''
        logger.info("Transcription ready, generating insights", job_id=job.id,
                    char_count=len(text))

        try:
            if not text.strip():
                raise ProcessingError("Transcription completed without text")
            result = await self.insight_engine.generate(text, job.duration)
        except ProcessingError as e:
            await self._fail(job, f"AI processing failed: {e}", REFUND_PROCESSING,
                             transcription=text)
            raise

        charge = await self._finalize_charge(job, result.tokens_used)
        if charge is None:
            failed = await self._fail(job, FINALIZE_FAILED_MESSAGE, None,
                                      transcription=text, tokens_used=result.tokens_used)
            return StageResult(job=failed, transitioned=True, error=FINALIZE_FAILED_MESSAGE)

        completed = await self._save(
            job.id,
            status=VideoStatus.COMPLETED,
            transcription=text,
            dashboard=result.dashboard.to_document(),
            tokens_used=result.tokens_used,
            credits_charged=abs(charge.amount),
            error_message=None,
        )
        logger.info("Video processing completed", job_id=job.id,
                    tokens_used=result.tokens_used, credits_charged=completed.credits_charged,
                    chunk_count=result.chunk_count)
        return StageResult(job=completed, transitioned=True)

    async def advance(self, job_id: str) -> StageResult:
        """Run the next transition for the job's current status"""
        job = await self._load(job_id)
        if job.status.is_terminal:
            return StageResult(job=job)

        try:
            if job.status == VideoStatus.PENDING:
                return StageResult(job=await self.start_download(job_id), transitioned=True)
            if job.status == VideoStatus.DOWNLOADED:
                return StageResult(job=await self.start_transcription(job_id), transitioned=True)
            return await self.check_transcription_status(job_id)
        except (DownloadError, TranscriptionError, ProcessingError) as e:
            failed = await self._load(job_id)
            return StageResult(job=failed, transitioned=failed.status != job.status, error=str(e))

    async def process_video(self, job_id: str) -> VideoJob:
        """Run the job to a terminal state, polling transcription in between.

        Raises TranscriptionTimeoutError when the service is still processing
        after poll_max_attempts checks; the job stays transcribing and can be
        resumed by calling this again.
        """
        job = await self._load(job_id)

        if job.status == VideoStatus.PENDING:
            job = await self.start_download(job_id)
        if job.status == VideoStatus.DOWNLOADED:
            job = await self.start_transcription(job_id)

        if job.status == VideoStatus.TRANSCRIBING:
            max_attempts = self.settings.service.poll_max_attempts
            interval = self.settings.service.poll_interval
            for attempt in range(1, max_attempts + 1):
                result = await self.check_transcription_status(job_id)
                if result.status != VideoStatus.TRANSCRIBING:
                    return result.job
                if attempt < max_attempts:
                    await asyncio.sleep(interval)

            logger.warning("Transcription polling exhausted", job_id=job_id,
                           attempts=max_attempts)
            raise TranscriptionTimeoutError(
                f"Transcription still processing after {max_attempts} checks"
            )

        return job
