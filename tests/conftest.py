import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import AppConfig, CreditConfig, ProcessingConfig, ServiceConfig, StorageConfig  # noqa: E402
from core.credits import CreditLedger  # noqa: E402
from core.download import DownloadService  # noqa: E402
from core.errors import ProcessingError  # noqa: E402
from core.llm import Completion  # noqa: E402
from core.models import User  # noqa: E402
from core.pipeline import VideoPipeline  # noqa: E402
from core.process import InsightEngine  # noqa: E402
from core.storage import MemoryStorage  # noqa: E402
from core.transcribe import TranscriptionService  # noqa: E402

BASE_URL = "http://video-service.test/api"
ADMIN_SECRET = "let-me-in"
USER_ID = "user-1"

TRANSCRIPT = (
    "Pricing strategy matters for every early stage startup. "
    "Customers pay for outcomes rather than features. "
    "Retention drives growth more than acquisition does. "
    "Pricing strategy matters for every early stage startup."
)


def full_dashboard(summary: str = "Pricing and retention drive growth",
                   topics=("pricing", "retention")) -> str:
    return json.dumps({
        "summary": {
            "text": summary,
            "metrics": [{"label": "Duration", "value": "2:05"}],
            "topics": list(topics),
        },
        "transcript": [{"time": "00:00", "text": "Intro"}],
        "insights": {
            "chips": [{"label": "1 insight extracted"}],
            "sections": [{
                "title": "Key Insights",
                "icon": "💡",
                "items": [{"text": "Pricing follows customer outcomes", "key": True}],
            }],
        },
        "mindMap": {
            "root": "Video Insights",
            "branches": [{"label": topic, "children": []} for topic in topics],
        },
    })


class ScriptedLLM:
    """LLMClient returning queued replies; entries may be text, Completion,
    an exception to raise, or a callable(system_prompt, user_prompt)"""

    def __init__(self, replies: Optional[List[Any]] = None, tokens: int = 100):
        self.replies = list(replies or [])
        self.tokens = tokens
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, system_prompt, user_prompt, temperature, max_tokens) -> Completion:
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        if not self.replies:
            raise ProcessingError("No scripted reply left")
        reply = self.replies.pop(0)
        if callable(reply) and not isinstance(reply, Completion):
            reply = reply(system_prompt, user_prompt)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, Completion):
            return reply
        return Completion(text=reply, input_tokens=self.tokens - 10, output_tokens=10,
                          total_tokens=self.tokens)


class FakeVideoService:
    """Routes MockTransport requests to canned replies.

    A reply is a JSON dict, an HTTP status code, or a callable(request)
    returning either (or raising an httpx error).
    """

    def __init__(self):
        self.download: Any = {
            "success": True,
            "data": {"videoId": "svc-video-1", "title": "Pricing 101", "duration": 125,
                     "thumbnail": "http://img.test/1.jpg", "downloadUrl": "http://dl.test/1.mp4"},
        }
        self.transcribe: Any = {
            "success": True,
            "data": {"transcriptionId": "tr-1", "status": "processing"},
        }
        self.statuses: List[Any] = [
            {"success": True, "data": {"status": "completed", "text": TRANSCRIPT}},
        ]
        self.requests: List[httpx.Request] = []

    def status_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/status")]

    def _handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/videos/download"):
            reply = self.download
        elif path.endswith("/transcribe"):
            reply = self.transcribe
        elif path.endswith("/status"):
            reply = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        else:
            return httpx.Response(404)

        if callable(reply):
            reply = reply(request)
        if isinstance(reply, httpx.Response):
            return reply
        if isinstance(reply, int):
            return httpx.Response(reply)
        return httpx.Response(200, json=reply)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handler))


def connect_error(request: httpx.Request):
    raise httpx.ConnectError("connection refused", request=request)


def make_settings(**processing_overrides) -> AppConfig:
    processing = dict(
        openai_api_key="test-key",
        retry_delay=0,
        consolidation_enabled=False,
    )
    processing.update(processing_overrides)
    return AppConfig(
        service=ServiceConfig(base_url=BASE_URL, poll_interval=0, poll_max_attempts=3),
        processing=ProcessingConfig(**processing),
        credits=CreditConfig(admin_secret=ADMIN_SECRET),
        storage=StorageConfig(backend="memory", write_retries=3, write_backoff=0),
    )


def make_pipeline(storage, service: FakeVideoService, llm: ScriptedLLM,
                  settings: Optional[AppConfig] = None) -> VideoPipeline:
    settings = settings or make_settings()
    client = service.client()
    return VideoPipeline(
        storage=storage,
        ledger=CreditLedger(storage, settings.credits),
        download_service=DownloadService(client, settings.service),
        transcription_service=TranscriptionService(client, settings.service),
        insight_engine=InsightEngine(llm, settings.processing),
        settings=settings,
    )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def settings() -> AppConfig:
    return make_settings()


@pytest.fixture
def storage() -> MemoryStorage:
    store = MemoryStorage()
    run(store.create_user(User(id=USER_ID, email="ada@example.com", credits=20)))
    return store


@pytest.fixture
def ledger(storage, settings) -> CreditLedger:
    return CreditLedger(storage, settings.credits)


@pytest.fixture
def service() -> FakeVideoService:
    return FakeVideoService()


@pytest.fixture
def balance(storage) -> Callable[[str], int]:
    def read(user_id: str = USER_ID) -> int:
        return run(storage.get_user(user_id)).credits
    return read
