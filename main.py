#!/usr/bin/env python3
"""
Video Insights - Main Orchestrator

Wires storage, credit ledger, external service adapters and the insight engine
into a VideoPipeline, and exposes a small command line for operating it.
Handles the complete pipeline: URL → Download → Transcript → Insight dashboard
"""

import asyncio
import json
import logging
import sys
from typing import List, Optional

import httpx
import structlog
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from config import AppConfig, StorageConfig, config
from core.credits import CreditLedger
from core.download import DownloadService
from core.errors import InsufficientCreditsError, PipelineError
from core.llm import LLMClient, OpenAIChatClient
from core.models import User, VideoStatus
from core.pipeline import VideoPipeline
from core.process import InsightEngine
from core.sqlite_store import SQLiteStorage
from core.storage import MemoryStorage, Storage
from core.transcribe import TranscriptionService
from job_report import summarize_jobs, write_jobs_to_csv

# Configure structured logging
logging.basicConfig(format="%(message)s", stream=sys.stderr,
                    level=logging.DEBUG if config.debug else logging.INFO)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.dev.ConsoleRenderer(colors=True)
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

USAGE = """Usage:
  python main.py add-user <email> [name]           # Create a user with zero credits
  python main.py grant <user_id|all> <amount>      # Admin grant (needs VIS_CREDITS_ADMIN_SECRET)
  python main.py balance <user_id>                 # Show balance and recent transactions
  python main.py process <user_id> <video_url>     # Submit a video and run it to completion
  python main.py resume <job_id>                   # Continue a job left transcribing
  python main.py status <job_id>                   # Show a stored job
  python main.py report [user_id]                  # Summarize jobs and export them to CSV

Examples:
  python main.py process 3f1c... https://www.youtube.com/watch?v=dQw4w9WgXcQ"""


def build_storage(settings: StorageConfig) -> Storage:
    if settings.backend == "memory":
        return MemoryStorage()
    return SQLiteStorage(settings.sqlite_path)


def build_pipeline(
    settings: AppConfig,
    storage: Storage,
    http_client: httpx.AsyncClient,
    llm: Optional[LLMClient] = None
) -> VideoPipeline:
    """Assemble a pipeline; every collaborator gets its own config section"""
    ledger = CreditLedger(storage, settings.credits)
    engine = InsightEngine(llm or OpenAIChatClient(settings.processing), settings.processing)
    return VideoPipeline(
        storage=storage,
        ledger=ledger,
        download_service=DownloadService(http_client, settings.service),
        transcription_service=TranscriptionService(http_client, settings.service),
        insight_engine=engine,
        settings=settings,
    )


def print_job(job) -> None:
    print(f"📋 Job ID: {job.id}")
    print(f"🔗 URL: {job.video_url}")
    print(f"📊 Status: {job.status.value}")
    if job.title:
        print(f"📺 Title: {job.title}")
    if job.error_message:
        print(f"❌ Error: {job.error_message}")
    if job.status == VideoStatus.COMPLETED:
        print(f"💰 Tokens Used: {job.tokens_used:,}")
        print(f"🎟️  Credits Charged: {job.credits_charged}")
        summary = (job.dashboard or {}).get('summary', {})
        if summary.get('text'):
            print(f"\n{summary['text']}")


async def run_process(storage: Storage, user_id: str, url: str, resume_job: Optional[str] = None) -> int:
    async with httpx.AsyncClient(timeout=config.service.request_timeout) as client:
        pipeline = build_pipeline(config, storage, client)

        if resume_job is None:
            try:
                job = await pipeline.submit_video(user_id, url)
            except InsufficientCreditsError as e:
                print(f"❌ {e}")
                return 1
            print(f"🎬 Submitted {url}")
        else:
            job = await pipeline.get_video(resume_job)
            if job is None:
                print(f"❌ Job not found: {resume_job}")
                return 1

        print(f"📋 Job ID: {job.id}")
        print("=" * 60)

        try:
            job = await pipeline.process_video(job.id)
        except PipelineError as e:
            logger.error("Processing stopped", job_id=job.id, error=str(e))
            job = await pipeline.get_video(job.id)

    write_jobs_to_csv([job], config.report_csv)
    print_job(job)
    return 0 if job.status == VideoStatus.COMPLETED else 1


async def run_command(args: List[str]) -> int:
    command, rest = args[0], args[1:]
    storage = build_storage(config.storage)
    ledger = CreditLedger(storage, config.credits)

    try:
        if command == "add-user" and rest:
            user = await storage.create_user(
                User(email=rest[0], name=rest[1] if len(rest) > 1 else None)
            )
            print(f"👤 Created user {user.id}")
            return 0

        if command == "grant" and len(rest) == 2:
            target = None if rest[0] == "all" else rest[0]
            result = await ledger.grant(config.credits.admin_secret, int(rest[1]),
                                        "Admin credit grant (cli)", user_id=target)
            print(("✅ " if result.success else "❌ ") + result.message)
            return 0 if result.success else 1

        if command == "balance" and len(rest) == 1:
            balance = await ledger.get_balance(rest[0])
            if balance is None:
                print(f"❌ User not found: {rest[0]}")
                return 1
            transactions, total = await ledger.get_history(rest[0], limit=10)
            print(f"🎟️  Balance: {balance} credits ({total} transactions)")
            for tx in transactions:
                print(f"  {tx.created_at:%Y-%m-%d %H:%M} {tx.type.value:<12} {tx.amount:>+5}  "
                      f"{tx.status.value:<9} {tx.description or ''}")
            return 0

        if command == "process" and len(rest) == 2:
            return await run_process(storage, rest[0], rest[1])

        if command == "resume" and len(rest) == 1:
            return await run_process(storage, "", "", resume_job=rest[0])

        if command == "status" and len(rest) == 1:
            job = await storage.get_job(rest[0])
            if job is None:
                print(f"❌ Job not found: {rest[0]}")
                return 1
            print_job(job)
            return 0

        if command == "report" and len(rest) <= 1:
            jobs = await storage.list_jobs(user_id=rest[0] if rest else None)
            print(json.dumps(summarize_jobs(jobs), indent=2))
            if jobs:
                write_jobs_to_csv(jobs, config.report_csv)
                print(f"✅ {len(jobs)} job(s) written to {config.report_csv}")
            return 0
    finally:
        await storage.close()

    print(USAGE)
    return 1


def main():
    """Main entry point with argument parsing"""
    if len(sys.argv) < 2:
        print(USAGE)
        sys.exit(1)

    if config.debug:
        print(f"🔧 Debug mode enabled")
        print(f"🤖 AI Model: {config.processing.openai_model}")
        print(f"🌐 Video service: {config.service.base_url}")
        print()

    try:
        exit_code = asyncio.run(run_command(sys.argv[1:]))
    except (PipelineError, ValueError) as e:
        print(f"\n💥 {e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
