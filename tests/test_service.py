import json
from datetime import timedelta

import pytest

from hand_worker.config import WorkerConfig
from hand_worker.models import JobStatus, UploadStatus, utcnow
from hand_worker.run import build_parser, run_command
from hand_worker.service import WorkerService

from conftest import STREAM_ID, phase1_reply, phase2_reply


@pytest.fixture
def service(config, blob_store, store, model_client):
    worker = WorkerService(config, blob_store=blob_store, store=store, model_client=model_client)
    worker.initialize(start_http=False)
    yield worker
    worker.stop()


def test_run_once_claims_and_runs_pending_job(service, store, model_client, uploaded_stream):
    model_client.replies[('phase1', 0)] = phase1_reply((1, "01:00", "03:00"))
    model_client.replies[('phase2', 0)] = phase2_reply(1)
    job = service.orchestrator.create_job(STREAM_ID)

    assert service.run_once() is True
    assert store.get_job(job.id).status == JobStatus.COMPLETED
    assert service.run_once() is False


def test_report_stale_only_reports(service, store):
    service.tracker.create("upload-1")
    service.tracker.set_status("upload-1", UploadStatus.UPLOADING)
    store.uploads["upload-1"].updated_at = utcnow() - timedelta(hours=30)

    assert service.report_stale() == {'uploads': 1, 'jobs': 0}
    assert store.get_upload("upload-1").status == UploadStatus.UPLOADING


def test_stats(service):
    stats = service.get_stats()

    assert stats['config']['blob_store_type'] == "memory"
    assert stats['orchestrator']['jobs_processed'] == 0


def test_cli_upload_then_status(service, make_video, capsys, store):
    path = make_video("Day 1 Final Table.mp4", b"x" * 3000)
    args = build_parser().parse_args(["upload", str(path), "--tournament", "wsop", "--event", "me"])

    assert run_command(service, args) == 0

    uploaded = json.loads(capsys.readouterr().out.strip())
    assert uploaded['status'] == "uploaded"
    stream = store.get_stream(uploaded['id'])
    assert stream.blob_uri.endswith("/Day_1_Final_Table.mp4")
    assert stream.tournament_id == "wsop"

    args = build_parser().parse_args(["status", uploaded['id']])
    assert run_command(service, args) == 0
    assert json.loads(capsys.readouterr().out)['progress'] == 100.0


def test_cli_analyze_and_sync(service, uploaded_stream, capsys):
    assert run_command(service, build_parser().parse_args(["analyze", STREAM_ID])) == 0
    assert json.loads(capsys.readouterr().out)['status'] == "completed"

    assert run_command(service, build_parser().parse_args(["sync", STREAM_ID])) == 0
    assert json.loads(capsys.readouterr().out) == {'success': True, 'streamId': STREAM_ID, 'handsCount': 0}


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("BLOB_STORE_TYPE", "memory")
    monkeypatch.setenv("DOCUMENT_STORE_TYPE", "memory")
    monkeypatch.setenv("WINDOW_LENGTH_SEC", "900")
    monkeypatch.setenv("WINDOW_OVERLAP_SEC", "90")
    monkeypatch.setenv("PARTIAL_COVERAGE_POLICY", "FAIL")
    monkeypatch.setenv("WORKER_API_TOKEN", "abc")

    config = WorkerConfig.from_env()

    assert config.WINDOW_LENGTH_SEC == 900.0
    assert config.WINDOW_OVERLAP_SEC == 90.0
    assert config.PARTIAL_COVERAGE_POLICY == "fail"
    assert config.API_TOKEN == "abc"
    assert config.UPLOAD_CHUNK_SIZE_BYTES == 16 * 1024 * 1024
    assert config.MAX_CONCURRENT_UPLOADS == 3
    config.validate(require_openai=False)


def test_config_requires_backends(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("AWS_S3_BUCKET", raising=False)
    monkeypatch.delenv("BLOB_STORE_TYPE", raising=False)
    monkeypatch.delenv("DOCUMENT_STORE_TYPE", raising=False)

    with pytest.raises(ValueError, match="DATABASE_URL"):
        WorkerConfig.from_env().validate(require_openai=False)


@pytest.mark.parametrize("overrides", [
    {'WINDOW_OVERLAP_SEC': 0},
    {'WINDOW_OVERLAP_SEC': 1800},
    {'UPLOAD_MAX_RETRIES': 0},
    {'PARTIAL_COVERAGE_POLICY': "ignore"},
])
def test_config_rejects_inconsistent_values(overrides):
    config = WorkerConfig(BLOB_STORE_TYPE="memory", DOCUMENT_STORE_TYPE="memory", **overrides)

    with pytest.raises(ValueError):
        config.validate(require_openai=False)
