import pytest

from conftest import USER_ID, FakeVideoService, ScriptedLLM, connect_error, make_pipeline, run
from core.errors import DownloadError, JobNotFoundError
from core.models import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    User,
    VideoJob,
    VideoStatus,
)
from core.sqlite_store import SQLiteStorage


@pytest.fixture
def db(tmp_path):
    store = SQLiteStorage(tmp_path / "data" / "insights.db")
    run(store.create_user(User(id=USER_ID, email="ada@example.com", credits=20)))
    yield store
    run(store.close())


def _spend(amount, reference_id=None, **kwargs):
    return CreditTransaction(user_id=USER_ID, type=TransactionType.SPEND, amount=-amount,
                             reference_id=reference_id, **kwargs)


def test_user_round_trip(db):
    user = run(db.get_user(USER_ID))
    assert (user.email, user.credits) == ("ada@example.com", 20)
    assert run(db.get_user("ghost")) is None
    assert [u.id for u in run(db.list_users())] == [USER_ID]


def test_job_round_trip_with_dashboard(db):
    job = run(db.create_job(VideoJob(user_id=USER_ID, video_url="https://youtu.be/x")))

    updated = run(db.update_job(
        job.id,
        status=VideoStatus.COMPLETED,
        dashboard={"summary": {"text": "Done", "topics": ["ünïcode"]}},
        tokens_used=1200,
        duration=61.5,
    ))

    stored = run(db.get_job(job.id))
    assert stored == updated
    assert stored.status == VideoStatus.COMPLETED
    assert stored.dashboard["summary"]["topics"] == ["ünïcode"]
    assert stored.duration == 61.5
    assert stored.updated_at >= job.updated_at


def test_update_unknown_job(db):
    with pytest.raises(JobNotFoundError):
        run(db.update_job("missing", status=VideoStatus.FAILED))


def test_list_and_count_jobs(db):
    ids = [run(db.create_job(VideoJob(user_id=USER_ID, video_url=f"https://youtu.be/{i}"))).id
           for i in range(3)]
    run(db.update_job(ids[0], status=VideoStatus.FAILED, error_message="boom"))

    assert [j.id for j in run(db.list_jobs(user_id=USER_ID, limit=2))] == [ids[2], ids[1]]
    assert [j.id for j in run(db.list_jobs(status=VideoStatus.FAILED))] == [ids[0]]
    assert run(db.count_jobs(user_id=USER_ID)) == 3
    assert run(db.count_jobs(status=VideoStatus.PENDING)) == 2


def test_record_transaction_checks_funds_atomically(db):
    assert run(db.record_transaction(_spend(25), require_funds=True)) is None
    assert run(db.get_user(USER_ID)).credits == 20
    assert run(db.count_transactions(USER_ID)) == 0

    assert run(db.record_transaction(_spend(20), require_funds=True)) is not None
    assert run(db.get_user(USER_ID)).credits == 0


def test_record_transaction_for_unknown_user(db):
    tx = CreditTransaction(user_id="ghost", type=TransactionType.REFUND, amount=5)
    assert run(db.record_transaction(tx, require_funds=False)) is None


def test_amend_transaction(db):
    estimate = run(db.record_transaction(
        _spend(5, "job-1", status=TransactionStatus.PENDING, reference_type="submission_estimate"),
        require_funds=True,
    ))

    amended = run(db.amend_transaction(estimate.id, amount=-8, tokens_used=2500,
                                       status=TransactionStatus.COMPLETED))
    assert amended.amount == -8
    assert run(db.get_transaction(estimate.id)) == amended
    assert run(db.get_user(USER_ID)).credits == 12

    assert run(db.amend_transaction(estimate.id, amount=-30)) is None
    assert run(db.get_transaction(estimate.id)).amount == -8
    assert run(db.get_user(USER_ID)).credits == 12


def test_transaction_ordering(db):
    first = run(db.record_transaction(_spend(1, "job-1", reference_type="a"), require_funds=True))
    second = run(db.record_transaction(_spend(2, "job-1", reference_type="a"), require_funds=True))
    run(db.record_transaction(_spend(3, "job-2"), require_funds=True))

    assert [t.amount for t in run(db.list_transactions(USER_ID, limit=2))] == [-3, -2]
    assert [t.id for t in run(db.list_transactions_by_reference("job-1"))] == [first.id, second.id]
    assert run(db.find_latest_by_reference("job-1", "a")).id == second.id
    assert run(db.find_latest_by_reference("job-1", "b")) is None


def test_pipeline_refund_on_sqlite(db):
    service = FakeVideoService()
    service.download = connect_error
    pipeline = make_pipeline(db, service, ScriptedLLM())
    job = run(pipeline.submit_video(USER_ID, "https://youtu.be/abc"))

    with pytest.raises(DownloadError):
        run(pipeline.start_download(job.id))

    assert run(db.get_job(job.id)).status == VideoStatus.FAILED
    assert run(db.get_user(USER_ID)).credits == 20
    types = [tx.type for tx in run(db.list_transactions_by_reference(job.id))]
    assert types == [TransactionType.SPEND, TransactionType.REFUND]
