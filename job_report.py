#!/usr/bin/env python3
"""
Job reporting for the Video Insights backend
Aggregates finished jobs (status, failure cause, tokens, credits) and exports them to CSV
"""
import csv
import fcntl
import os
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import structlog

from core.models import VideoJob, VideoStatus

logger = structlog.get_logger(__name__)

# Checked in order; the first bucket with a matching keyword wins
FAILURE_KEYWORDS = [
    ('ai', ('ai processing', 'openai', 'chunk', 'completion', 'api error', 'rate limit')),
    ('credit', ('credit', 'insufficient', 'balance')),
    ('download', ('download',)),
    ('transcription', ('transcription', 'transcribe', 'transcript')),
]

CSV_HEADERS = [
    'job_id', 'user_id', 'video_url', 'video_title', 'video_duration',
    'status', 'failure_category', 'error_message',
    'tokens_used', 'credits_charged',
    'created_at', 'updated_at', 'processing_seconds',
]


def classify_failure(message: str) -> str:
    """Bucket an error message: download, transcription, ai, credit or unknown"""
    lowered = (message or '').lower()
    for category, keywords in FAILURE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return 'unknown'


def summarize_jobs(jobs: Iterable[VideoJob]) -> Dict[str, Any]:
    """Aggregate counts across jobs"""
    by_status = Counter()
    failures = Counter()
    total = 0
    tokens = 0
    credits = 0

    for job in jobs:
        total += 1
        by_status[job.status.value] += 1
        if job.status == VideoStatus.FAILED:
            failures[classify_failure(job.error_message or '')] += 1
        tokens += job.tokens_used or 0
        credits += job.credits_charged or 0

    completed = by_status.get(VideoStatus.COMPLETED.value, 0)
    return {
        'total_jobs': total,
        'by_status': dict(by_status),
        'failures_by_category': dict(failures),
        'total_tokens_used': tokens,
        'total_credits_charged': credits,
        'average_tokens_per_completed': round(tokens / completed, 1) if completed else 0.0,
        'success_rate_percent': round(completed / total * 100, 1) if total else 0.0,
    }


def _job_row(job: VideoJob) -> Dict[str, Any]:
    processing = (job.updated_at - job.created_at).total_seconds()
    return {
        'job_id': job.id,
        'user_id': job.user_id,
        'video_url': job.video_url,
        'video_title': job.title or '',
        'video_duration': f"{job.duration:.0f}" if job.duration else '',
        'status': job.status.value,
        'failure_category': classify_failure(job.error_message or '') if job.status == VideoStatus.FAILED else '',
        'error_message': job.error_message or '',
        'tokens_used': job.tokens_used if job.tokens_used is not None else '',
        'credits_charged': job.credits_charged if job.credits_charged is not None else '',
        'created_at': job.created_at.strftime('%Y-%m-%d %H:%M:%S'),
        'updated_at': job.updated_at.strftime('%Y-%m-%d %H:%M:%S'),
        'processing_seconds': f"{processing:.2f}",
    }


def write_jobs_to_csv(jobs: Iterable[VideoJob], csv_file: Union[str, Path]) -> int:
    """Append one row per job to the summary CSV, writing headers for a new file"""
    csv_path = Path(csv_file)
    rows: List[Dict[str, Any]] = [_job_row(job) for job in jobs]

    # Exclusive lock so concurrent workers never interleave rows
    with open(csv_path, 'a', newline='', encoding='utf-8') as csvfile:
        fcntl.flock(csvfile.fileno(), fcntl.LOCK_EX)
        try:
            writer = csv.DictWriter(csvfile, fieldnames=CSV_HEADERS)
            if os.path.getsize(csv_path) == 0:
                writer.writeheader()
            writer.writerows(rows)
        finally:
            fcntl.flock(csvfile.fileno(), fcntl.LOCK_UN)

    logger.info("Job summary written", csv_file=str(csv_path), rows=len(rows))
    return len(rows)
