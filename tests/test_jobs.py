import asyncio
import time

import pytest

from unifier_web.errors import InsufficientInputs, ValidationError
from unifier_web.jobs import JobState, can_transition


async def _upload(stack, make_upload, *names):
    return [await stack.registry.register(make_upload(n)) for n in names]


def test_merge_completes_and_releases_inputs(make_stack, make_upload, recorder):
    stack = make_stack()
    obs = recorder()

    async def scenario():
        await stack.broadcaster.subscribe(obs)
        a, b = await _upload(stack, make_upload, "b.mp4", "a.mp4")
        job = await stack.orchestrator.submit([a.id, b.id], {"outputName": "holiday"})
        assert job.state is JobState.INITIALIZING
        await stack.orchestrator.wait()
        await stack.broadcaster.flush()
        return job, a, b

    job, a, b = asyncio.run(scenario())
    assert job.state is JobState.COMPLETED
    assert job.progress == 100.0
    assert job.output_name == "holiday.mp4"
    assert job.output_path.read_bytes() == stack.engine.output_bytes
    assert job.to_dict()["downloadUrl"] == f"/api/jobs/{job.id}/download"

    # manifest listed the inputs in submission order
    manifest = stack.engine.runs[0]["manifest"].splitlines()
    assert manifest[1] == f"file '{a.path}'"
    assert manifest[2] == f"file '{b.path}'"
    assert stack.engine.runs[0]["total_duration"] == 20.0

    # inputs and manifest gone, output kept until its expiry
    assert stack.registry.count() == 0
    assert not a.path.exists() and not b.path.exists()
    assert not job.manifest_path.exists()
    assert stack.retention.is_scheduled(f"output:{job.id}")

    states = [m["state"] for m in obs.messages]
    assert states[0] == "initializing"
    assert states[-1] == "completed"
    assert set(states) == {"initializing", "processing", "completed"}


def test_progress_never_decreases(make_stack, make_upload, recorder):
    stack = make_stack()
    obs = recorder()

    async def scenario():
        await stack.broadcaster.subscribe(obs)
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        await stack.orchestrator.submit([x.id for x in assets], {})
        await stack.orchestrator.wait()
        await stack.broadcaster.flush()

    asyncio.run(scenario())
    progress = [m["progress"] for m in obs.messages]
    assert progress == sorted(progress)
    assert progress[-1] == 100.0
    assert 40.0 not in progress
    assert obs.messages[-1]["throughput"] == "2.0x"


def test_engine_start_failure(make_stack, make_upload):
    stack = make_stack()
    stack.engine.start_error = True

    async def scenario():
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([x.id for x in assets], {})
        await stack.orchestrator.wait()
        return job, assets

    job, assets = asyncio.run(scenario())
    assert job.state is JobState.FAILED
    assert "Could not start" in job.error
    assert stack.registry.count() == 0
    assert all(not x.path.exists() for x in assets)
    assert not job.output_path.exists()
    assert "downloadUrl" not in job.to_dict()


def test_engine_runtime_failure_removes_partial_output(make_stack, make_upload):
    stack = make_stack()
    stack.engine.runtime_error = "ffmpeg failed (rc=1)\nInvalid data found when processing input"

    async def scenario():
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([x.id for x in assets], {})
        await stack.orchestrator.wait()
        return job

    job = asyncio.run(scenario())
    assert job.state is JobState.FAILED
    assert "Invalid data" in job.error
    assert job.progress == 75.0
    assert not job.output_path.exists()
    assert not job.manifest_path.exists()
    assert not stack.retention.is_scheduled(f"output:{job.id}")


def test_inputs_vanishing_before_start_fail_from_initializing(make_stack, make_upload, recorder):
    stack = make_stack()
    obs = recorder()

    async def scenario():
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        await stack.broadcaster.subscribe(obs)
        job = await stack.orchestrator.submit([x.id for x in assets], {})
        stack.registry.revoke(assets[0].id)
        await stack.orchestrator.wait()
        await stack.broadcaster.flush()
        return job

    job = asyncio.run(scenario())
    assert job.state is JobState.FAILED
    assert [m["state"] for m in obs.messages] == ["initializing", "failed"]
    assert stack.engine.runs == []


def test_submit_requires_two_ids(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        (a,) = await _upload(stack, make_upload, "1.mp4")
        with pytest.raises(ValidationError, match="at least 2"):
            await stack.orchestrator.submit([a.id], {})
        with pytest.raises(ValidationError):
            await stack.orchestrator.submit([], {})

    asyncio.run(scenario())
    assert stack.orchestrator.jobs == {}


def test_unknown_ids_are_dropped(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        a, b = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([a.id, "missing", b.id], {})
        await stack.orchestrator.wait()
        return job, a, b

    job, a, b = asyncio.run(scenario())
    assert job.asset_ids == (a.id, b.id)
    assert job.state is JobState.COMPLETED


def test_too_few_resolvable_ids(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        (a,) = await _upload(stack, make_upload, "1.mp4")
        with pytest.raises(InsufficientInputs):
            await stack.orchestrator.submit([a.id, "missing"], {})
        with pytest.raises(InsufficientInputs):
            await stack.orchestrator.submit([a.id, a.id], {})
        return a

    a = asyncio.run(scenario())
    assert stack.orchestrator.jobs == {}
    # rejected submissions leave the asset alone
    assert stack.registry.lookup(a.id) is a


def test_invalid_profile_is_rejected(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        a, b = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        with pytest.raises(ValidationError, match="Invalid profile"):
            await stack.orchestrator.submit([a.id, b.id], {"format": "exe"})

    asyncio.run(scenario())
    assert stack.orchestrator.jobs == {}


def test_turbo_wins_over_eco(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        a, b = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([a.id, b.id], {"turboMode": True, "ecoMode": True})
        await stack.orchestrator.wait()
        return job

    job = asyncio.run(scenario())
    assert job.profile.performance_mode == "turbo"
    assert job.profile.eco is False
    encoding = stack.engine.runs[0]["encoding"]
    assert encoding[encoding.index("-preset") + 1] == "ultrafast"


def test_audio_inputs_use_audio_profile(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        a, b = await _upload(stack, make_upload, "1.mp3", "2.wav")
        job = await stack.orchestrator.submit([a.id, b.id], {"format": "mp3", "quality": "high"})
        await stack.orchestrator.wait()
        return job

    job = asyncio.run(scenario())
    assert job.output_name == "merged_media.mp3"
    encoding = stack.engine.runs[0]["encoding"]
    assert "-c:v" not in encoding
    assert encoding[encoding.index("-c:a") + 1] == "libmp3lame"


def test_terminal_states_are_final():
    assert can_transition(JobState.CREATED, JobState.INITIALIZING)
    assert can_transition(JobState.PROCESSING, JobState.PROCESSING)
    assert not can_transition(JobState.CREATED, JobState.PROCESSING)
    for terminal in (JobState.COMPLETED, JobState.FAILED):
        for target in JobState:
            assert not can_transition(terminal, target)


def test_shared_asset_outlives_the_first_job(make_stack, make_upload):
    stack = make_stack()
    # the second job is slower and only reaches the shared file late
    stack.engine.run_delays = [0.01, 0.05]

    async def scenario():
        a, b, c = await _upload(stack, make_upload, "a.mp4", "b.mp4", "c.mp4")
        first = await stack.orchestrator.submit([a.id, b.id], {})
        second = await stack.orchestrator.submit([c.id, a.id], {})
        assert stack.registry.holders(a.id) == 2

        while not first.terminal:
            await asyncio.sleep(0.005)
        assert first.state is JobState.COMPLETED
        assert not second.terminal
        assert stack.registry.lookup(a.id) is a
        assert a.path.exists()
        assert not b.path.exists()

        await stack.orchestrator.wait()
        return first, second, (a, b, c)

    first, second, assets = asyncio.run(scenario())
    assert second.state is JobState.COMPLETED, second.error
    assert stack.registry.count() == 0
    assert all(not x.path.exists() for x in assets)


def test_submit_is_not_slowed_by_stalled_observers(make_stack, make_upload, recorder):
    stack = make_stack()
    stalled = [recorder(delay=60) for _ in range(3)]

    async def scenario():
        for obs in stalled:
            await stack.broadcaster.subscribe(obs)
        a, b = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        started = time.monotonic()
        job = await stack.orchestrator.submit([a.id, b.id], {})
        submit_time = time.monotonic() - started
        await stack.orchestrator.wait()
        run_time = time.monotonic() - started
        stack.broadcaster.close()
        return job, submit_time, run_time

    job, submit_time, run_time = asyncio.run(scenario())
    assert submit_time < 0.1
    assert job.state is JobState.COMPLETED
    assert run_time < stack.broadcaster.send_timeout


def test_unexpected_error_fails_only_that_job(make_stack, make_upload):
    stack = make_stack()
    stack.engine.crash_runs = {0}

    async def scenario():
        a, b, c, d = await _upload(stack, make_upload, "a.mp4", "b.mp4", "c.mp4", "d.mp4")
        broken = await stack.orchestrator.submit([a.id, b.id], {})
        healthy = await stack.orchestrator.submit([c.id, d.id], {})
        await stack.orchestrator.wait()
        return broken, healthy, (a, b, c, d)

    broken, healthy, assets = asyncio.run(scenario())
    assert broken.state is JobState.FAILED
    assert broken.error == "internal error: KeyError"
    assert not broken.output_path.exists()
    assert healthy.state is JobState.COMPLETED
    assert healthy.output_path.exists()
    assert stack.registry.count() == 0
    assert all(not x.path.exists() for x in assets)


def test_shutdown_cancels_running_jobs(make_stack, make_upload):
    stack = make_stack()
    stack.engine.run_delays = [1.0]

    async def scenario():
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([x.id for x in assets], {})
        await asyncio.sleep(0.01)
        await stack.orchestrator.shutdown(timeout=0.05)
        return job, assets

    job, assets = asyncio.run(scenario())
    assert job.state is JobState.FAILED
    assert job.error.startswith("cancelled")
    assert stack.registry.count() == 0
    assert all(not x.path.exists() for x in assets)
    assert not job.manifest_path.exists()


def test_shutdown_waits_for_quick_jobs(make_stack, make_upload):
    stack = make_stack()

    async def scenario():
        assets = await _upload(stack, make_upload, "1.mp4", "2.mp4")
        job = await stack.orchestrator.submit([x.id for x in assets], {})
        await stack.orchestrator.shutdown(timeout=5)
        return job

    assert asyncio.run(scenario()).state is JobState.COMPLETED
