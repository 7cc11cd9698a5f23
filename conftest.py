import asyncio
import io
from pathlib import Path
from types import SimpleNamespace

import pytest

import unifier
from unifier_web.broadcast import ConnectionManager
from unifier_web.jobs import JobOrchestrator
from unifier_web.registry import UploadRegistry
from unifier_web.retention import RetentionManager
from unifier_web.settings import Settings


class FakeEngine:
    """
    Stands in for FFmpegEngine: no subprocesses, scripted events.

    Like the concat demuxer, each manifest entry is opened only when the
    merge reaches it, so an input deleted mid-run fails the run.
    """

    def __init__(self):
        self.probe_metadata = {"duration": 10.0, "resolution": "320x240", "codec": "h264", "bitrate": 500000}
        self.probe_error = False
        self.start_error = False
        self.runtime_error = None
        self.crash_runs = set()        # run indexes that raise KeyError mid-run
        self.steps = [25.0, 50.0, 40.0, 75.0]
        self.step_delay = 0.01
        self.run_delays = []           # per-run step delay, consumed in start order
        self.output_bytes = b"merged-output-bytes"
        self.runs = []

    async def probe(self, path):
        if self.probe_error:
            raise unifier.ProbeError("ffprobe failed: invalid data")
        return dict(self.probe_metadata)

    async def run(self, manifest, output, encoding, total_duration):
        index = len(self.runs)
        text = Path(manifest).read_text()
        self.runs.append({
            "manifest":       text,
            "output":         output,
            "encoding":       list(encoding),
            "total_duration": total_duration,
        })
        delay = self.run_delays.pop(0) if self.run_delays else self.step_delay
        inputs = [
            line[len("file '"):-1].replace("'\\''", "'")
            for line in text.splitlines() if line.startswith("file '")
        ]
        if self.start_error:
            raise unifier.EngineStartError("Could not start ffmpeg: not found")
        for step, pct in enumerate(self.steps):
            await asyncio.sleep(delay)
            for i, path in enumerate(inputs):
                if i * len(self.steps) // len(inputs) == step and not Path(path).exists():
                    yield unifier.EngineEvent("error", error=f"ffmpeg failed (rc=1)\n{path}: No such file or directory")
                    return
            if index in self.crash_runs and step == 1:
                raise KeyError("duration")
            yield unifier.EngineEvent("progress", percent=pct, throughput="2.0x")
        if self.runtime_error:
            Path(output).write_bytes(b"partial")
            yield unifier.EngineEvent("error", error=self.runtime_error)
            return
        Path(output).write_bytes(self.output_bytes)
        yield unifier.EngineEvent("end", percent=100.0, throughput="2.0x")


class FakeUpload:
    def __init__(self, filename, data):
        self.filename = filename
        self._buf = io.BytesIO(data)

    async def read(self, size=-1):
        return self._buf.read(size)


class Recorder:
    """Observer that keeps every message it is sent."""

    def __init__(self, fail=False, delay=0.0):
        self.messages = []
        self.fail = fail
        self.delay = delay

    async def send_json(self, data):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(data)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        temp_dir=tmp_path / "work",
        config_file=tmp_path / "config" / "settings.json",
        asset_ttl=60,
        output_ttl=60,
        download_grace=0.2,
        sweep_interval=3600,
        sweep_max_age=3600,
        shutdown_grace=1,
    )


@pytest.fixture()
def fake_engine():
    return FakeEngine()


@pytest.fixture()
def make_upload():
    def _make(filename="clip.mp4", data=b"\x00\x00\x00\x18ftypmp42fake-video"):
        return FakeUpload(filename, data)
    return _make


@pytest.fixture()
def recorder():
    return Recorder


@pytest.fixture()
def make_stack(settings, fake_engine):
    """Build the service objects without the HTTP layer."""

    def _make(**overrides):
        opts = {
            "max_bytes":  1024 * 1024,
            "ttl":        settings.asset_ttl,
            "max_files":  settings.max_files,
            "output_ttl": settings.output_ttl,
        }
        opts.update(overrides)
        retention = RetentionManager(settings.temp_dir)
        registry = UploadRegistry(
            settings.temp_dir,
            fake_engine,
            retention,
            max_bytes=opts["max_bytes"],
            ttl=opts["ttl"],
            max_files=opts["max_files"],
        )
        broadcaster = ConnectionManager(send_timeout=0.5)
        orchestrator = JobOrchestrator(
            registry,
            fake_engine,
            broadcaster,
            retention,
            root=settings.temp_dir,
            output_ttl=opts["output_ttl"],
        )
        return SimpleNamespace(
            engine=fake_engine,
            retention=retention,
            registry=registry,
            broadcaster=broadcaster,
            orchestrator=orchestrator,
            root=settings.temp_dir,
        )

    return _make


@pytest.fixture()
def app(settings, fake_engine):
    from unifier_web.main import create_app
    return create_app(settings, engine=fake_engine)


@pytest.fixture()
def client(app):
    from fastapi.testclient import TestClient
    with TestClient(app) as c:
        yield c
