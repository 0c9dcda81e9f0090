"""
Download Service Adapter

Single responsibility: video URL -> downloaded video metadata on the external service.
The service does the actual download; we only issue the request and validate the reply.
"""

from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field

from config import ServiceConfig
from core.errors import DownloadError

# Configure structured logger
logger = structlog.get_logger(__name__)


class DownloadResult(BaseModel):
    """Validated reply of the download endpoint"""

    success: bool = Field(description="Whether the service accepted the download")
    video_id: Optional[str] = Field(None, description="Video identifier on the service")
    title: Optional[str] = None
    duration: Optional[float] = Field(None, description="Duration in seconds")
    thumbnail: Optional[str] = None
    download_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DownloadResult":
        if not isinstance(payload, dict):
            raise ValueError("reply body is not a JSON object")
        data = payload.get('data') or {}
        if not isinstance(data, dict):
            raise ValueError("reply data is not a JSON object")
        return cls(
            success=bool(payload.get('success')),
            video_id=data.get('videoId'),
            title=data.get('title'),
            duration=data.get('duration'),
            thumbnail=data.get('thumbnail'),
            download_url=data.get('downloadUrl'),
        )


class DownloadService:
    """Thin wrapper around ``POST /videos/download``"""

    def __init__(self, client: httpx.AsyncClient, settings: ServiceConfig):
        self.client = client
        self.settings = settings

    async def request_download(self, url: str) -> DownloadResult:
        """Ask the service to download ``url``.

        Transport, HTTP status and malformed-body problems raise DownloadError;
        a well-formed ``success: false`` reply is returned as is. Callers treat
        both as a failed download.
        """
        endpoint = f"{self.settings.base_url}/videos/download"
        logger.info("Requesting video download", url=url)

        try:
            response = await self.client.post(
                endpoint,
                json={'url': url},
                timeout=self.settings.request_timeout
            )
            response.raise_for_status()
            result = DownloadResult.from_payload(response.json())
        except httpx.HTTPStatusError as e:
            logger.error("Download request rejected",
                        url=url,
                        status_code=e.response.status_code)
            raise DownloadError(f"Download service returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error("Download request failed", url=url, error=str(e))
            raise DownloadError(f"Download service unreachable: {e}") from e
        except ValueError as e:
            logger.error("Download reply could not be parsed", url=url, error=str(e))
            raise DownloadError(f"Invalid reply from download service: {e}") from e

        if result.success and not result.video_id:
            logger.warning("Download reply without video id", url=url)
            result.success = False

        logger.info("Download request finished",
                   url=url,
                   success=result.success,
                   video_id=result.video_id)
        return result
