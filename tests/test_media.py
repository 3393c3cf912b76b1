import asyncio
from types import SimpleNamespace

import ffmpeg
import pytest

from hand_worker.errors import AICallError, MediaProbeError
from hand_worker.pipeline import media, model_client
from hand_worker.pipeline.media import frame_offsets, probe_duration
from hand_worker.pipeline.model_client import ModelRequest, OpenAIModelClient


def test_frame_offsets_use_interval():
    assert frame_offsets(35, 10, 180) == [0, 10, 20, 30]


def test_frame_offsets_capped():
    offsets = frame_offsets(1800, 5, 180)

    assert len(offsets) == 180
    assert offsets[1] == 10.0


def test_frame_offsets_empty_range():
    assert frame_offsets(0, 10, 180) == []


def test_probe_duration_reads_format(monkeypatch):
    monkeypatch.setattr(media.ffmpeg, "probe", lambda url: {'format': {'duration': "3600.5"}})

    assert probe_duration("s3://bucket/day1.mp4") == 3600.5


def test_probe_duration_falls_back_to_video_stream(monkeypatch):
    probe = {'format': {}, 'streams': [{'codec_type': "audio"}, {'codec_type': "video", 'duration': "120"}]}
    monkeypatch.setattr(media.ffmpeg, "probe", lambda url: probe)

    assert probe_duration("day1.mp4") == 120.0


def test_probe_duration_errors(monkeypatch):
    def failing(url):
        raise ffmpeg.Error("ffprobe", b"", b"No such file")

    monkeypatch.setattr(media.ffmpeg, "probe", failing)
    with pytest.raises(MediaProbeError, match="No such file"):
        probe_duration("missing.mp4")

    monkeypatch.setattr(media.ffmpeg, "probe", lambda url: {'format': {}, 'streams': []})
    with pytest.raises(MediaProbeError):
        probe_duration("day1.mp4")


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(content):
    completions = FakeCompletions(content)
    openai_client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIModelClient(frame_interval_sec=10, max_frames=5, client=openai_client), completions


def _request():
    return ModelRequest(prompt="find hands", media_uri="day1.mp4", start_seconds=540,
                        end_seconds=600, model="gpt-4o-mini", phase="phase1", window_index=1)


def test_openai_client_sends_labelled_frames(monkeypatch):
    frames = [(0.0, b"\xff\xd8a"), (10.0, b"\xff\xd8b")]
    monkeypatch.setattr(model_client, "sample_frames", lambda *args: frames)
    client, completions = _client('{"hands": []}')

    text = asyncio.run(client.generate(_request()))

    assert text == '{"hands": []}'
    call = completions.calls[0]
    assert call['model'] == "gpt-4o-mini"
    assert call['response_format'] == {"type": "json_object"}
    content = call['messages'][0]['content']
    assert content[0] == {"type": "text", "text": "find hands"}
    assert content[1] == {"type": "text", "text": "[00:00]"}
    assert content[3] == {"type": "text", "text": "[00:10]"}
    assert content[2]['image_url']['url'].startswith("data:image/jpeg;base64,")


def test_openai_client_requires_frames(monkeypatch):
    monkeypatch.setattr(model_client, "sample_frames", lambda *args: [])
    client, completions = _client('{"hands": []}')

    with pytest.raises(AICallError):
        asyncio.run(client.generate(_request()))
    assert completions.calls == []


def test_openai_client_empty_message(monkeypatch):
    monkeypatch.setattr(model_client, "sample_frames", lambda *args: [(0.0, b"jpg")])
    client, _ = _client(None)

    with pytest.raises(AICallError):
        asyncio.run(client.generate(_request()))
