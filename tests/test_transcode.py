import asyncio
from pathlib import Path

import httpx
import pytest

from src.filmix_gateway.errors import TranscodeFailure
from src.filmix_gateway.models import EpisodeKey, SourceDescriptor, SourceOrigin
from src.filmix_gateway.services import transcode
from src.filmix_gateway.services.transcode import (
    TranscodePipeline,
    httpx_downloader,
    normalize_source_identity,
    output_key,
    pick_audio_stream_index,
)

STREAMS = [
    {"index": 0, "codec_type": "video"},
    {"index": 1, "codec_type": "audio", "tags": {"language": "ukr"}},
    {"index": 2, "codec_type": "audio", "tags": {"language": "eng"}},
]


class FakeTools:
    def __init__(self, streams=None, fail_remux=False, delay=0.01):
        self.streams = STREAMS if streams is None else streams
        self.fail_remux = fail_remux
        self.delay = delay
        self.downloads = []
        self.probes = []
        self.remuxes = []

    async def download(self, url, target):
        self.downloads.append(url)
        await asyncio.sleep(self.delay)
        Path(target).write_bytes(b"original")

    async def probe(self, path):
        self.probes.append(path)
        await asyncio.sleep(self.delay)
        return self.streams

    async def remux(self, source, audio_index, out_path):
        self.remuxes.append((source, audio_index))
        Path(out_path).write_bytes(b"partial output")
        await asyncio.sleep(self.delay)
        if self.fail_remux:
            raise TranscodeFailure("ffmpeg exited with code 1", "x" * 2000 + "Invalid data found")
        Path(out_path).write_bytes(b"remuxed")


def make_pipeline(tmp_path, tools):
    return TranscodePipeline(
        cache_dir=str(tmp_path / "cache"),
        downloader=tools.download,
        prober=tools.probe,
        remuxer=tools.remux,
        language="en",
    )


def remote(url):
    return SourceDescriptor(origin=SourceOrigin.PLAYER_DATA, quality=720, source_url=url)


def test_identity_ignores_query_and_leading_path():
    a = normalize_source_identity("https://CDN.example/s/abc123/season5/ep11_720.mp4?session=1")
    b = normalize_source_identity("https://cdn.example/s/zzz999/season5/ep11_720.mp4?session=2#t=5")
    assert a == b == "https://cdn.example/season5/ep11_720.mp4"


def test_output_key_is_scoped_by_episode():
    url = "https://cdn.example/season5/ep11_720.mp4"
    assert output_key(EpisodeKey(5, 11), url) != output_key(EpisodeKey(5, 12), url)
    assert len(output_key(None, url)) == 64


def test_pick_audio_stream_by_iso639_2():
    assert pick_audio_stream_index(STREAMS, "en") == 2


def test_pick_audio_stream_by_region_subtag():
    streams = [{"index": 3, "codec_type": "audio", "tags": {"language": "ru"}},
               {"index": 4, "codec_type": "audio", "tags": {"language": "en-US"}}]
    assert pick_audio_stream_index(streams, "en") == 4


def test_pick_audio_stream_falls_back_to_first_audio():
    streams = [{"index": 0, "codec_type": "video"}, {"index": 5, "codec_type": "audio"}]
    assert pick_audio_stream_index(streams, "en") == 5


def test_pick_audio_stream_without_audio():
    with pytest.raises(TranscodeFailure):
        pick_audio_stream_index([{"index": 0, "codec_type": "video"}], "en")


@pytest.mark.asyncio
async def test_concurrent_requests_for_same_asset_run_once(tmp_path):
    tools = FakeTools()
    pipeline = make_pipeline(tmp_path, tools)
    episode = EpisodeKey(5, 11)
    urls = [f"https://cdn.example/s/tok{i}/season5/ep11_720.mp4?session={i}" for i in range(5)]

    results = await asyncio.gather(*(pipeline.ensure(remote(url), episode) for url in urls))

    assert len(set(results)) == 1
    assert results[0].read_bytes() == b"remuxed"
    assert results[0].name.endswith(".en.mp4")
    assert len(tools.downloads) == 1
    assert len(tools.probes) == 1
    assert tools.remuxes[0][1] == 2
    assert len(tools.remuxes) == 1


@pytest.mark.asyncio
async def test_existing_artifact_is_reused(tmp_path):
    tools = FakeTools()
    pipeline = make_pipeline(tmp_path, tools)
    descriptor = remote("https://cdn.example/season5/ep11_720.mp4")
    first = await pipeline.ensure(descriptor, EpisodeKey(5, 11))
    second = await pipeline.ensure(descriptor, EpisodeKey(5, 11))
    assert first == second
    assert len(tools.remuxes) == 1


@pytest.mark.asyncio
async def test_failure_cleans_up_and_reaches_every_waiter(tmp_path):
    tools = FakeTools(fail_remux=True)
    pipeline = make_pipeline(tmp_path, tools)
    descriptor = remote("https://cdn.example/season5/ep11_720.mp4")

    results = await asyncio.gather(
        *(pipeline.ensure(descriptor, EpisodeKey(5, 11)) for _ in range(3)),
        return_exceptions=True,
    )

    assert all(isinstance(r, TranscodeFailure) for r in results)
    assert len(tools.remuxes) == 1
    assert results[0].status_code == 502
    assert len(results[0].diagnostics) == 800
    assert results[0].diagnostics.endswith("Invalid data found")
    leftovers = [p.name for p in (tmp_path / "cache").iterdir()]
    assert not any(name.endswith(".part") or name.endswith(".en.mp4") for name in leftovers)


@pytest.mark.asyncio
async def test_unexpected_error_is_wrapped(tmp_path):
    tools = FakeTools()

    async def broken_probe(path):
        raise OSError("disk on fire")

    pipeline = TranscodePipeline(str(tmp_path), tools.download, broken_probe, tools.remux)
    with pytest.raises(TranscodeFailure) as excinfo:
        await pipeline.ensure(remote("https://cdn.example/a/b.mp4"))
    assert "disk on fire" in str(excinfo.value)


@pytest.mark.asyncio
async def test_local_source_skips_download(tmp_path):
    media = tmp_path / "fixed.mp4"
    media.write_bytes(b"local")
    tools = FakeTools()
    pipeline = make_pipeline(tmp_path, tools)
    descriptor = SourceDescriptor(origin=SourceOrigin.FIXED_LOCAL, local_path=str(media))

    artifact = await pipeline.ensure(descriptor, EpisodeKey(5, 11))

    assert artifact.exists()
    assert tools.downloads == []
    assert tools.probes == [str(media)]


@pytest.mark.asyncio
async def test_ffprobe_prober_runs_subprocess(monkeypatch):
    captured = {}

    class Completed:
        returncode = 0
        stdout = '{"streams": [{"index": 1, "codec_type": "audio"}]}'
        stderr = ""

    def fake_run(cmd, **kwargs):
        captured["cmd"] = cmd
        captured["kwargs"] = kwargs
        return Completed()

    monkeypatch.setattr(transcode.subprocess, "run", fake_run)
    streams = await transcode.ffprobe_prober("ffprobe-bin", timeout=5)("/tmp/in.mp4")

    assert streams == [{"index": 1, "codec_type": "audio"}]
    assert captured["cmd"][0] == "ffprobe-bin"
    assert captured["cmd"][-1] == "/tmp/in.mp4"
    assert captured["kwargs"]["timeout"] == 5


@pytest.mark.asyncio
async def test_ffmpeg_remuxer_reports_stderr_tail(monkeypatch):
    class Completed:
        returncode = 1
        stdout = ""
        stderr = "moov atom not found"

    monkeypatch.setattr(transcode.subprocess, "run", lambda cmd, **kwargs: Completed())
    with pytest.raises(TranscodeFailure) as excinfo:
        await transcode.ffmpeg_remuxer("ffmpeg")("/tmp/in.mp4", 2, "/tmp/out.part")
    assert excinfo.value.diagnostics == "moov atom not found"


@pytest.mark.asyncio
async def test_downloader_writes_file_off_the_event_loop(tmp_path, monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["referer"] = request.headers.get("referer")
        return httpx.Response(200, content=b"x" * 3000)

    offloaded = []
    real_to_thread = asyncio.to_thread

    async def recording_to_thread(func, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await real_to_thread(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording_to_thread)
    target = tmp_path / "orig.part"
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        download = httpx_downloader(client, referer="https://filmix.example/page.html")
        await download("https://media.example/a.mp4", str(target))

    assert target.read_bytes() == b"x" * 3000
    assert seen["referer"] == "https://filmix.example/page.html"
    assert offloaded[0] == "open"
    assert "write" in offloaded
    assert offloaded[-1] == "close"


@pytest.mark.asyncio
async def test_downloader_http_error_status(tmp_path):
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))) as client:
        download = httpx_downloader(client)
        with pytest.raises(TranscodeFailure):
            await download("https://media.example/a.mp4", str(tmp_path / "orig.part"))
