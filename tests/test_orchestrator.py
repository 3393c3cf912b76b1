from datetime import timedelta

import pytest

from hand_worker.errors import AICallError, AuthorizationError, InvalidTransitionError, RecordNotFoundError
from hand_worker.models import Hand, JobStatus, PipelineStatus, UploadStatus, utcnow
from hand_worker.orchestrator import PipelineOrchestrator

from conftest import EVENT_ID, STREAM_ID, TOURNAMENT_ID, phase1_reply, phase2_reply


@pytest.fixture
def replies():
    # Window 0 covers [0, 600], window 1 covers [540, 1140].
    # The hand at [550, 595] is seen by both windows; window 1 is further from its edge.
    return {
        ('phase1', 0): phase1_reply((1, "01:00", "03:00"), (2, "09:10", "09:55")),
        ('phase2', 0): phase2_reply(1, 2),
        ('phase1', 1): phase1_reply((1, "00:10", "00:55"), (2, "02:40", "04:20")),
        ('phase2', 1): phase2_reply(1, 2),
    }


@pytest.fixture
def run(orchestrator, uploaded_stream):
    def _run():
        job = orchestrator.create_job(STREAM_ID)
        return orchestrator.execute_pipeline(job)
    return _run


def test_full_job_stitches_and_publishes(run, model_client, replies, store):
    model_client.replies.update(replies)

    job = run()

    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100.0
    assert job.total_windows == 2
    assert job.completed_windows == 2
    assert job.failed_windows == 0
    assert job.hands_found == 3
    assert job.warning is None

    hands = store.list_stream_hands(STREAM_ID)
    assert [h.number for h in hands] == [1, 2, 3]
    assert [(h.start_seconds, h.end_seconds) for h in hands] == [(60, 180), (550, 595), (700, 800)]
    assert hands[1].window_index == 1

    stream = store.get_stream(STREAM_ID)
    assert stream.pipeline_status == PipelineStatus.COMPLETED
    assert stream.pipeline_progress == 100.0
    assert stream.hands_count == 3


def test_window_with_no_hands_skips_phase2(run, model_client, store):
    model_client.replies[('phase1', 0)] = phase1_reply((1, "01:00", "03:00"))
    model_client.replies[('phase2', 0)] = phase2_reply(1)

    job = run()

    assert job.status == JobStatus.COMPLETED
    assert model_client.calls('phase2', 1) == 0
    assert store.count_stream_hands(STREAM_ID) == 1


def test_malformed_response_retried_within_budget(run, model_client, replies):
    model_client.replies.update(replies)
    attempts = []

    def flaky(request):
        attempts.append(request)
        if len(attempts) == 1:
            return "I could not find any hands, sorry."
        return replies[('phase1', 1)]

    model_client.replies[('phase1', 1)] = flaky

    job = run()

    assert job.status == JobStatus.COMPLETED
    assert len(attempts) == 2
    assert job.hands_found == 3


def test_partial_coverage_warns(run, model_client, replies, store):
    model_client.replies.update(replies)
    model_client.replies[('phase1', 1)] = AICallError("upstream 503")

    job = run()

    assert job.status == JobStatus.COMPLETED
    assert job.failed_windows == 1
    assert "1/2 windows failed" in job.warning
    assert "upstream 503" in job.warning
    assert model_client.calls('phase1', 1) == 3
    assert [(h.start_seconds, h.end_seconds) for h in store.list_stream_hands(STREAM_ID)] == [(60, 180), (550, 595)]


def test_partial_coverage_fails_under_strict_policy(run, config, model_client, replies, store):
    config.PARTIAL_COVERAGE_POLICY = "fail"
    model_client.replies.update(replies)
    model_client.replies[('phase1', 1)] = AICallError("upstream 503")

    job = run()

    assert job.status == JobStatus.FAILED
    assert job.error.startswith("Partial coverage")
    assert store.count_stream_hands(STREAM_ID) == 0
    assert store.get_stream(STREAM_ID).pipeline_status == PipelineStatus.FAILED


def test_all_windows_failed(run, model_client):
    model_client.replies[('phase1', 0)] = AICallError("upstream 503")
    model_client.replies[('phase1', 1)] = AICallError("upstream 503")

    job = run()

    assert job.status == JobStatus.FAILED
    assert job.error.startswith("All 2 windows failed")


def test_authorization_error_fails_job_without_retry(run, model_client, store):
    model_client.replies[('phase1', 0)] = AuthorizationError("OpenAI rejected credentials")
    model_client.replies[('phase1', 1)] = AuthorizationError("OpenAI rejected credentials")

    job = run()

    assert job.status == JobStatus.FAILED
    assert job.error == "OpenAI rejected credentials"
    assert model_client.calls('phase1', 0) <= 1
    assert model_client.calls('phase1', 1) <= 1
    stream = store.get_stream(STREAM_ID)
    assert stream.pipeline_status == PipelineStatus.FAILED
    assert stream.pipeline_error == "OpenAI rejected credentials"


def test_cancel_discards_results(orchestrator, uploaded_stream, model_client, replies, store):
    model_client.replies.update(replies)
    job = orchestrator.create_job(STREAM_ID)

    def cancel_then_answer(request):
        orchestrator.request_cancel(job.id)
        return replies[('phase1', 0)]

    model_client.replies[('phase1', 0)] = cancel_then_answer

    finished = orchestrator.execute_pipeline(job)

    assert finished.status == JobStatus.FAILED
    assert finished.error == "Job cancelled"
    assert store.count_stream_hands(STREAM_ID) == 0


def test_cancel_pending_job(orchestrator, uploaded_stream, store):
    job = orchestrator.create_job(STREAM_ID)

    cancelled = orchestrator.request_cancel(job.id)

    assert cancelled.status == JobStatus.FAILED
    assert store.get_stream(STREAM_ID).pipeline_status == PipelineStatus.FAILED
    with pytest.raises(InvalidTransitionError):
        orchestrator.request_cancel(job.id)


def test_job_claimed_by_another_worker_is_left_alone(orchestrator, uploaded_stream, model_client, store):
    job = orchestrator.create_job(STREAM_ID)
    claimed = store.claim_pending_job()
    assert claimed.id == job.id

    result = orchestrator.execute_pipeline(job)

    assert result.status == JobStatus.PROCESSING
    assert result.error is None
    assert store.get_stream(STREAM_ID).pipeline_status == PipelineStatus.ANALYZING
    assert model_client.requests == []
    assert orchestrator.get_stats()['jobs_failed'] == 0


def test_cancelled_job_is_not_run_from_stale_copy(orchestrator, uploaded_stream, model_client):
    job = orchestrator.create_job(STREAM_ID)
    orchestrator.request_cancel(job.id)

    result = orchestrator.execute_pipeline(job)

    assert result.status == JobStatus.FAILED
    assert result.error == "Job cancelled"
    assert model_client.requests == []


def test_claim_job_only_from_pending(orchestrator, uploaded_stream, store):
    job = orchestrator.create_job(STREAM_ID)

    assert store.claim_job(job.id).status == JobStatus.PROCESSING
    assert store.claim_job(job.id) is None
    assert store.claim_job("missing") is None


def test_create_job_guards(orchestrator, store, uploaded_stream):
    with pytest.raises(RecordNotFoundError):
        orchestrator.create_job("missing")

    store.upsert_stream("no-media", TOURNAMENT_ID, EVENT_ID, {})
    with pytest.raises(InvalidTransitionError):
        orchestrator.create_job("no-media")

    orchestrator.create_job(STREAM_ID)
    with pytest.raises(InvalidTransitionError):
        orchestrator.create_job(STREAM_ID)


def test_duration_probed_when_unknown(config, store, blob_store, model_client):
    store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {'blob_uri': "memory://memory/v.mp4"})
    probed = []

    def probe(url):
        probed.append(url)
        return 500.0

    orchestrator = PipelineOrchestrator(config, store, blob_store, model_client, duration_probe=probe)
    job = orchestrator.execute_pipeline(orchestrator.create_job(STREAM_ID))

    assert probed == ["memory://memory/v.mp4"]
    assert job.total_windows == 1
    assert store.get_stream(STREAM_ID).video_duration_seconds == 500.0


def test_sync_is_idempotent(run, orchestrator, model_client, replies, store):
    model_client.replies.update(replies)
    run()

    writes = store.write_count
    result = orchestrator.sync_stream_hands(STREAM_ID)

    assert result.to_dict() == {'success': True, 'streamId': STREAM_ID, 'handsCount': 3}
    assert not result.written
    assert store.write_count == writes


def test_sync_repairs_drifted_stream(orchestrator, store, uploaded_stream):
    store.replace_stream_hands(STREAM_ID, "job-0", [
        Hand(stream_id=STREAM_ID, number=1, start_seconds=0, end_seconds=60, window_index=0),
    ])
    store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {'pipeline_status': PipelineStatus.FAILED})

    result = orchestrator.sync_stream_hands(STREAM_ID)

    assert result.written
    stream = store.get_stream(STREAM_ID)
    assert stream.hands_count == 1
    assert stream.pipeline_status == PipelineStatus.COMPLETED
    assert orchestrator.sync_stream_hands(STREAM_ID).written is False


def test_sync_unknown_stream(orchestrator):
    with pytest.raises(RecordNotFoundError):
        orchestrator.sync_stream_hands("missing")


def test_reset_stream_analysis(run, orchestrator, model_client, replies, store):
    model_client.replies.update(replies)
    run()

    stream = orchestrator.reset_stream_analysis(STREAM_ID)

    assert stream.pipeline_status == PipelineStatus.PENDING
    assert stream.hands_count == 0
    assert stream.current_job_id is None
    assert store.count_stream_hands(STREAM_ID) == 0


def test_reset_requires_analysis_state(orchestrator, uploaded_stream):
    with pytest.raises(InvalidTransitionError):
        orchestrator.reset_stream_analysis(STREAM_ID)


def test_stale_job_can_be_failed(orchestrator, uploaded_stream, store):
    job = orchestrator.create_job(STREAM_ID)
    store.claim_pending_job()

    with pytest.raises(InvalidTransitionError):
        orchestrator.fail_stale_job(job.id)

    store.jobs[job.id].updated_at = utcnow() - timedelta(hours=25)
    assert [j.id for j in orchestrator.find_stale_jobs()] == [job.id]

    failed = orchestrator.fail_stale_job(job.id)

    assert failed.status == JobStatus.FAILED
    assert "timed out" in failed.error
    assert store.get_stream(STREAM_ID).pipeline_status == PipelineStatus.FAILED


def test_stats_track_outcomes(run, orchestrator, model_client, replies):
    model_client.replies.update(replies)
    run()

    stats = orchestrator.get_stats()

    assert stats['jobs_processed'] == 1
    assert stats['hands_stored'] == 3
    assert stats['success_rate'] == 1.0


def test_fake_client_records_window_ranges(run, model_client):
    run()

    ranges = sorted((r.start_seconds, r.end_seconds) for r in model_client.requests)
    assert ranges == [(0.0, 600.0), (540.0, 1140.0)]


@pytest.fixture
def tracked(config, store, blob_store, model_client, tracker):
    tracker.create(STREAM_ID, STREAM_ID, TOURNAMENT_ID, EVENT_ID)
    tracker.set_status(STREAM_ID, UploadStatus.UPLOADING)
    tracker.set_status(STREAM_ID, UploadStatus.UPLOADED, blob_uri="memory://memory/v.mp4")
    store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {'video_duration_seconds': 1140.0})
    return PipelineOrchestrator(config, store, blob_store, model_client, tracker=tracker)


def test_upload_record_follows_analysis(tracked, tracker):
    job = tracked.execute_pipeline(tracked.create_job(STREAM_ID))

    assert job.status == JobStatus.COMPLETED
    assert tracker.get_status(STREAM_ID).status == UploadStatus.COMPLETED


def test_upload_record_fails_with_analysis(tracked, tracker, model_client):
    model_client.replies[('phase1', 0)] = AuthorizationError("OpenAI rejected credentials")
    model_client.replies[('phase1', 1)] = AuthorizationError("OpenAI rejected credentials")

    tracked.execute_pipeline(tracked.create_job(STREAM_ID))

    record = tracker.get_status(STREAM_ID)
    assert record.status == UploadStatus.FAILED
    assert record.error_message == "OpenAI rejected credentials"


def test_cancelled_pending_job_leaves_upload_record(tracked, tracker):
    job = tracked.create_job(STREAM_ID)
    tracked.request_cancel(job.id)

    assert tracker.get_status(STREAM_ID).status == UploadStatus.UPLOADED
