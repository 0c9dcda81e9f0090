"""
Transcription Service Adapter

Single responsibility: service video id -> transcript text.
Issues the transcription request and polls the status endpoint at a fixed interval.
"""

import asyncio
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, validator

from config import ServiceConfig
from core.errors import TranscriptionError

# Configure structured logger
logger = structlog.get_logger(__name__)

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _reply_data(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("reply body is not a JSON object")
    data = payload.get('data') or {}
    if not isinstance(data, dict):
        raise ValueError("reply data is not a JSON object")
    return data


class TranscriptionRequestResult(BaseModel):
    """Validated reply of the transcribe endpoint"""

    success: bool
    transcription_id: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TranscriptionRequestResult":
        data = _reply_data(payload)
        return cls(
            success=bool(payload.get('success')),
            transcription_id=data.get('transcriptionId'),
            status=data.get('status'),
        )


class TranscriptionStatus(BaseModel):
    """One observation of the transcription status endpoint"""

    success: bool = Field(description="Whether the status call itself succeeded")
    status: str = Field(default=STATUS_PROCESSING)
    text: Optional[str] = None

    @validator('status', pre=True)
    def normalize_status(cls, v):
        if not v:
            return STATUS_PROCESSING
        return str(v).lower()

    @property
    def is_completed(self) -> bool:
        return self.success and self.status == STATUS_COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.success and self.status == STATUS_FAILED

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TranscriptionStatus":
        data = _reply_data(payload)
        return cls(
            success=bool(payload.get('success')),
            status=data.get('status'),
            text=data.get('text'),
        )


class TranscriptionService:
    """Thin wrapper around the transcribe and status endpoints"""

    def __init__(self, client: httpx.AsyncClient, settings: ServiceConfig):
        self.client = client
        self.settings = settings

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        endpoint = f"{self.settings.base_url}{path}"
        try:
            response = await self.client.request(
                method,
                endpoint,
                timeout=self.settings.request_timeout,
                **kwargs
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Transcription service rejected request",
                        path=path,
                        status_code=e.response.status_code)
            raise TranscriptionError(
                f"Transcription service returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("Transcription service unreachable", path=path, error=str(e))
            raise TranscriptionError(f"Transcription service unreachable: {e}") from e
        except ValueError as e:
            logger.error("Transcription reply could not be parsed", path=path, error=str(e))
            raise TranscriptionError(f"Invalid reply from transcription service: {e}") from e

    async def request_transcription(self, service_video_id: str) -> TranscriptionRequestResult:
        """Start transcription of a video previously downloaded by the service"""

        logger.info("Requesting transcription", service_video_id=service_video_id)

        payload = await self._call(
            'POST',
            f"/videos/{service_video_id}/transcribe",
            json={
                'modelSize': self.settings.model_size,
                'device': self.settings.device,
                'computeType': self.settings.compute_type,
                'language': self.settings.language,
                'saveToFile': self.settings.save_to_file,
            }
        )
        try:
            result = TranscriptionRequestResult.from_payload(payload)
        except ValueError as e:
            raise TranscriptionError(f"Invalid reply from transcription service: {e}") from e

        if result.success and not result.transcription_id:
            logger.warning("Transcription reply without id", service_video_id=service_video_id)
            result.success = False

        logger.info("Transcription request finished",
                   service_video_id=service_video_id,
                   success=result.success,
                   transcription_id=result.transcription_id)
        return result

    async def get_status(self, transcription_id: str) -> TranscriptionStatus:
        """Single status check, no waiting"""

        payload = await self._call('GET', f"/transcriptions/{transcription_id}/status")
        try:
            status = TranscriptionStatus.from_payload(payload)
        except ValueError as e:
            raise TranscriptionError(f"Invalid status reply: {e}") from e

        logger.debug("Transcription status checked",
                    transcription_id=transcription_id,
                    success=status.success,
                    status=status.status)
        return status

    async def poll_transcription_status(self, transcription_id: str) -> Optional[str]:
        """Poll until the transcript is ready.

        Returns the text on completion, None on an explicit failure or when
        the attempts run out. Use get_status() to tell those two apart.
        """
        max_attempts = self.settings.poll_max_attempts
        interval = self.settings.poll_interval

        logger.info("Polling transcription status",
                   transcription_id=transcription_id,
                   max_attempts=max_attempts,
                   interval=interval)

        for attempt in range(1, max_attempts + 1):
            status = await self.get_status(transcription_id)

            if status.is_completed:
                logger.info("Transcription completed",
                           transcription_id=transcription_id,
                           attempts=attempt,
                           char_count=len(status.text or ''))
                return status.text or None

            if status.is_failed:
                logger.warning("Transcription reported failed",
                              transcription_id=transcription_id,
                              attempts=attempt)
                return None

            if attempt < max_attempts:
                await asyncio.sleep(interval)

        logger.warning("Transcription polling exhausted",
                      transcription_id=transcription_id,
                      attempts=max_attempts)
        return None
