import csv

import pytest

from core.models import VideoJob, VideoStatus
from job_report import classify_failure, summarize_jobs, write_jobs_to_csv


def _job(status, error=None, tokens=None, credits=None):
    return VideoJob(user_id="user-1", video_url="https://youtu.be/x", status=status,
                    error_message=error, tokens_used=tokens, credits_charged=credits)


@pytest.fixture
def jobs():
    return [
        _job(VideoStatus.COMPLETED, tokens=1200, credits=5),
        _job(VideoStatus.COMPLETED, tokens=2500, credits=7),
        _job(VideoStatus.FAILED, error="Download failed: Download service unreachable"),
        _job(VideoStatus.FAILED, error="Insufficient credits to finalize processing", tokens=900),
        _job(VideoStatus.TRANSCRIBING),
    ]


@pytest.mark.parametrize("message, category", [
    ("Download failed: Download service returned HTTP 500", "download"),
    ("Transcription failed on the video service", "transcription"),
    ("AI processing failed: Transcript is empty after deduplication", "ai"),
    ("AI processing failed: Error code: 429, insufficient_quota", "ai"),
    ("Insufficient credits to finalize processing", "credit"),
    ("Something odd", "unknown"),
    ("", "unknown"),
])
def test_classify_failure(message, category):
    assert classify_failure(message) == category


def test_summarize_jobs(jobs):
    summary = summarize_jobs(jobs)

    assert summary["total_jobs"] == 5
    assert summary["by_status"] == {"completed": 2, "failed": 2, "transcribing": 1}
    assert summary["failures_by_category"] == {"download": 1, "credit": 1}
    assert summary["total_tokens_used"] == 4600
    assert summary["total_credits_charged"] == 12
    assert summary["success_rate_percent"] == 40.0


def test_summarize_no_jobs():
    summary = summarize_jobs([])
    assert summary["total_jobs"] == 0
    assert summary["success_rate_percent"] == 0.0


def test_csv_header_written_once(tmp_path, jobs):
    path = tmp_path / "job_summary.csv"

    assert write_jobs_to_csv(jobs[:2], path) == 2
    assert write_jobs_to_csv(jobs[2:], path) == 3

    with open(path, newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 5
    assert rows[0]["status"] == "completed"
    assert rows[0]["credits_charged"] == "5"
    assert rows[2]["failure_category"] == "download"
    assert rows[4]["tokens_used"] == ""
