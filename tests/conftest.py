import json
from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union

import pytest

from hand_worker.adapters.memory_adapter import InMemoryBlobStorage, InMemoryDocumentStore
from hand_worker.config import WorkerConfig
from hand_worker.orchestrator import PipelineOrchestrator
from hand_worker.pipeline.model_client import ModelClient, ModelRequest
from hand_worker.upload_tracker import UploadStatusTracker

STREAM_ID = "stream-1"
TOURNAMENT_ID = "wsop-2024"
EVENT_ID = "main-event"
BLOB_URI = "memory://memory/wsop-2024/main-event/stream-1/day1.mp4"

Reply = Union[str, Exception, Callable[[ModelRequest], str]]


class FakeModelClient(ModelClient):
    """
    Canned model replies keyed by (phase, window_index).

    A reply may be response text, an exception to raise, or a callable
    taking the request. Phase 1 windows without a reply report no hands.
    """

    def __init__(self, replies: Dict[Tuple[str, int], Reply] = None):
        self.replies = dict(replies or {})
        self.requests: List[ModelRequest] = []

    async def generate(self, request: ModelRequest) -> str:
        self.requests.append(request)
        reply = self.replies.get((request.phase, request.window_index))
        if reply is None:
            return json.dumps({"hands": []})
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    def calls(self, phase: str, window_index: int) -> int:
        return sum(1 for r in self.requests if r.phase == phase and r.window_index == window_index)


def phase1_reply(*ranges) -> str:
    """ranges: (handNumber, start, end) with MM:SS timestamps"""
    return json.dumps({"hands": [
        {"handNumber": n, "start": start, "end": end} for n, start, end in ranges
    ]})


def phase2_reply(*numbers, confidence: float = 0.9) -> str:
    return json.dumps({"hands": [
        {
            "handNumber": n,
            "stakes": "10K/20K",
            "pot": 150000,
            "board": {"flop": ["Ah", "Kd", "7c"], "turn": "2s", "river": "9h"},
            "players": [
                {"name": "Alice", "position": "BTN", "stackSize": 1200000, "holeCards": ["As", "Ad"]},
                {"name": "Bob", "position": "BB", "stackSize": 900000},
            ],
            "actions": [
                {"player": "Alice", "street": "preflop", "action": "raise", "amount": 45000},
                {"player": "Bob", "street": "preflop", "action": "call", "amount": 25000},
            ],
            "winners": [{"name": "Alice", "amount": 150000, "hand": "Set of Aces"}],
            "semanticTags": ["#BigPot"],
            "aiAnalysis": {"confidence": confidence, "reasoning": "Clear showdown", "handQuality": "interesting"},
        }
        for n in numbers
    ]})


@pytest.fixture
def blob_store():
    return InMemoryBlobStorage()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def tracker(store):
    return UploadStatusTracker(store, stale_timeout_hours=24)


@pytest.fixture
def config(tmp_path):
    # Two windows over a 1140s stream: [0, 600] and [540, 1140]
    return WorkerConfig(
        BLOB_STORE_TYPE="memory",
        DOCUMENT_STORE_TYPE="memory",
        UPLOAD_CHUNK_SIZE_BYTES=1024,
        UPLOAD_RETRY_DELAY_MS=0,
        WINDOW_LENGTH_SEC=600.0,
        WINDOW_OVERLAP_SEC=60.0,
        WINDOW_RETRY_DELAY_MS=0,
        AI_CALL_TIMEOUT_SEC=5.0,
        DATA_DIR=str(tmp_path / "data"),
    )


@pytest.fixture
def model_client():
    return FakeModelClient()


@pytest.fixture
def uploaded_stream(store):
    return store.upsert_stream(STREAM_ID, TOURNAMENT_ID, EVENT_ID, {
        'blob_uri': BLOB_URI,
        'pipeline_status': "uploaded",
        'upload_status': "uploaded",
        'upload_progress': 100.0,
        'video_duration_seconds': 1140.0,
    })


@pytest.fixture
def orchestrator(config, store, blob_store, model_client):
    return PipelineOrchestrator(config, store, blob_store, model_client,
                                duration_probe=lambda url: 1140.0)


@pytest.fixture
def make_video(tmp_path) -> Callable[[str, bytes], Path]:
    def _make(name: str, data: bytes) -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _make
