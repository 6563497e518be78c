import asyncio
import json

import httpx
import pytest

from scribeflow.core.exceptions import (
    InputError,
    JobExpiredError,
    JobFailedError,
    ProtocolError,
    RequestRejectedError,
    TransientError,
    TranscriptionTimeoutError,
)
from scribeflow.services.audio_source import BytesAudioSource
from scribeflow.services.job_client import RemoteJobClient


@pytest.fixture
def make_client(settings_factory, clock):
    def make(server, **overrides):
        config = settings_factory(**overrides)
        client = RemoteJobClient(
            httpx.AsyncClient(transport=server.transport),
            config,
            sleep=clock.sleep,
            clock=clock,
        )
        return client

    return make


def audio(size=2500, filename="talk.mp3"):
    return BytesAudioSource(bytes(range(256)) * (size // 256) + b"\x00" * (size % 256), filename)


class ShortSource(BytesAudioSource):
    async def read_range(self, offset, length):
        data = await super().read_range(offset, length)
        return data[:-1]


async def test_uploads_parts_in_order_and_returns_transcript(make_client, job_server_factory, progress):
    server = job_server_factory(statuses=[
        {"job": {"status": "processing"}},
        {"job": {"status": "active"}, "progress": {"stage": "transcribing", "chunksTotal": 2, "chunksSucceeded": 1}},
        {"job": {"status": "succeeded"}, "transcript": {"text": "  Hello there  "}},
    ])
    source = audio()
    client = make_client(server)

    text = await client.run_job(source, False, progress)

    assert text == "Hello there"
    assert server.created == [{
        "filename": "talk.mp3",
        "contentType": "audio/mpeg",
        "contentLengthBytes": 2500,
        "timestamped": False,
    }]
    assert [len(server.uploaded[n]) for n in (1, 2, 3)] == [1000, 1000, 500]
    assert b"".join(server.uploaded[n] for n in (1, 2, 3)) == await source.read_all()
    assert server.completed == [{"parts": [
        {"partNumber": 1, "etag": '"etag-1"'},
        {"partNumber": 2, "etag": '"etag-2"'},
        {"partNumber": 3, "etag": '"etag-3"'},
    ]}]
    assert server.aborts == 0
    assert set(server.api_keys) == {"test-key"}
    assert progress.events[:6] == [
        (2, "Preparing upload..."),
        (25, "Uploading audio (1/3)..."),
        (45, "Uploading audio (2/3)..."),
        (65, "Uploading audio (3/3)..."),
        (70, "Finalizing upload..."),
        (75, "Transcribing audio..."),
    ]
    assert (89, "Transcribing chunks (1/2)...") in progress.events


async def test_chunked_job_reports_chunking_stage(make_client, job_server_factory, progress):
    server = job_server_factory(processing_strategy="chunked", statuses=[
        {"job": {"status": "active", "chunkCount": 4}, "progress": {"stage": "chunking", "chunksTotal": 2}},
        {"job": {"status": "active"}, "progress": {"stage": "assembling"}},
        {"job": {"status": "succeeded"}, "transcript": {"text": "ok"}},
    ])

    await make_client(server).run_job(audio(), False, progress)

    assert (75, "Chunking audio...") in progress.events
    assert (77, "Chunking audio (2/4)...") in progress.events
    assert (99, "Assembling transcript...") in progress.events


async def test_inline_start_result_skips_polling(make_client, job_server_factory):
    server = job_server_factory(start_responses=[(200, {"text": "inline text"})])

    text = await make_client(server).run_job(audio(), False)

    assert text == "inline text"
    assert server.status_polls == 0


async def test_timestamped_inline_segments_become_subtitles(make_client, job_server_factory):
    server = job_server_factory(start_responses=[(200, {
        "text": "plain words",
        "verbose_json": {"segments": [{"start": 0, "end": 1.5, "text": " Hi "}]},
    })])

    text = await make_client(server).run_job(audio(), True)

    assert text == "1\n00:00:00,000 --> 00:00:01,500\nHi"


async def test_timestamped_request_ignores_plain_inline_text(make_client, job_server_factory):
    server = job_server_factory(
        start_responses=[(200, {"text": "no timing here"})],
        statuses=[{"job": {"status": "succeeded"}, "transcript": {"jsonUrl": "https://storage.test/out.json"}}],
        signed_files={"/out.json": json.dumps({"segments": [{"start": 1, "end": 2, "text": "Later"}]})},
    )

    text = await make_client(server).run_job(audio(), True)

    assert text == "1\n00:00:01,000 --> 00:00:02,000\nLater"
    assert server.status_polls == 1


async def test_succeeded_job_falls_back_to_text_url(make_client, job_server_factory):
    server = job_server_factory(
        statuses=[{"job": {"status": "succeeded"}, "transcript": {"textUrl": "https://storage.test/out.txt"}}],
        signed_files={"/out.txt": "fetched transcript\n"},
    )

    assert await make_client(server).run_job(audio(), False) == "fetched transcript"


async def test_succeeded_job_without_transcript_is_protocol_error(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "succeeded"}}])

    with pytest.raises(ProtocolError, match="could not be retrieved"):
        await make_client(server).run_job(audio(), False)
    assert server.aborts == 1


async def test_kick_reissues_start_every_minute(make_client, job_server_factory, clock):
    server = job_server_factory(
        statuses=[{"job": {"status": "processing"}}] * 40 + [{"job": {"status": "succeeded"}, "transcript": {"text": "x"}}],
    )

    await make_client(server).run_job(audio(), False)

    assert server.start_calls == 2
    assert set(clock.sleeps) == {2.0}


async def test_kick_with_inline_result_short_circuits(make_client, job_server_factory):
    server = job_server_factory(
        statuses=[{"job": {"status": "processing"}}],
        start_responses=[(202, None), (200, {"text": "from kick"})],
    )

    assert await make_client(server).run_job(audio(), False) == "from kick"
    assert server.status_polls == 31


async def test_poll_loop_times_out(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "processing"}}])

    with pytest.raises(TranscriptionTimeoutError):
        await make_client(server, JOB_TIMEOUT=10.0).run_job(audio(), False)
    assert server.status_polls == 5
    assert server.aborts == 0


async def test_failed_job_carries_server_message(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "failed", "errorMessage": "Audio is silent"}}])

    with pytest.raises(JobFailedError) as exc_info:
        await make_client(server).run_job(audio(), False)
    assert exc_info.value.detail == "Audio is silent"


async def test_failed_job_without_message_uses_generic_text(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "failed"}}])

    with pytest.raises(JobFailedError, match="Transcription job failed."):
        await make_client(server).run_job(audio(), False)


async def test_expired_job(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "expired"}}])

    with pytest.raises(JobExpiredError):
        await make_client(server).run_job(audio(), False)


async def test_unknown_status_keeps_polling(make_client, job_server_factory):
    server = job_server_factory(statuses=[
        {"job": {"status": "mystery"}},
        {"job": {"status": "succeeded"}, "transcript": {"text": "fine"}},
    ])

    assert await make_client(server).run_job(audio(), False) == "fine"
    assert server.status_polls == 2


async def test_missing_etag_aborts_job(make_client, job_server_factory):
    server = job_server_factory(send_etag=False)

    with pytest.raises(ProtocolError, match="Missing ETag"):
        await make_client(server).run_job(audio(), False)
    assert server.aborts == 1
    assert server.completed == []


async def test_failed_part_upload_aborts_job(make_client, job_server_factory):
    server = job_server_factory(put_status=503)

    with pytest.raises(TransientError):
        await make_client(server).run_job(audio(), False)
    assert server.aborts == 1
    assert server.start_calls == 0


async def test_short_read_aborts_job(make_client, job_server_factory):
    server = job_server_factory()
    source = ShortSource(b"a" * 2500, "talk.mp3")

    with pytest.raises(InputError, match="Short read"):
        await make_client(server).run_job(source, False)
    assert server.aborts == 1


async def test_part_plan_must_cover_file(make_client, job_server_factory):
    server = job_server_factory(part_size=1000, total_parts=5)

    with pytest.raises(ProtocolError, match="Part plan"):
        await make_client(server).run_job(audio(2500), False)
    assert server.aborts == 1
    assert server.part_url_requests == 0


async def test_zero_part_size_is_protocol_error(make_client, job_server_factory):
    server = job_server_factory(part_size=0, total_parts=3)

    with pytest.raises(ProtocolError, match="upload plan"):
        await make_client(server).run_job(audio(), False)
    assert server.aborts == 1


async def test_abort_failure_does_not_mask_original_error(make_client, job_server_factory):
    server = job_server_factory(send_etag=False)
    original_handle = server.handle

    def handle(request):
        if request.url.path.endswith("/upload/abort"):
            return httpx.Response(500, json={"error": "abort broke"})
        return original_handle(request)

    server.handle = handle

    with pytest.raises(ProtocolError, match="Missing ETag"):
        await make_client(server).run_job(audio(), False)


async def test_rejected_create_request(make_client, job_server_factory):
    server = job_server_factory()

    def handle(request):
        return httpx.Response(402, json={"error": {"message": "Out of credits"}})

    server.handle = handle

    with pytest.raises(RequestRejectedError, match="Out of credits") as exc_info:
        await make_client(server).run_job(audio(), False)
    assert exc_info.value.status_code == 402


async def test_cancellation_during_polling_aborts_job(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "processing"}}])
    client = make_client(server)

    task = asyncio.ensure_future(client.run_job(audio(), False))
    while server.status_polls < 3:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert server.aborts == 1


async def test_failed_complete_aborts_job(make_client, job_server_factory):
    server = job_server_factory(complete_status=503)

    with pytest.raises(TransientError, match="complete unavailable"):
        await make_client(server).run_job(audio(), False)

    assert len(server.completed) == 1
    assert server.start_calls == 0
    assert server.aborts == 1


async def test_rejected_start_aborts_job(make_client, job_server_factory):
    server = job_server_factory(start_responses=[(409, {"error": {"message": "Upload not finished"}})])

    with pytest.raises(RequestRejectedError, match="Upload not finished"):
        await make_client(server).run_job(audio(), False)

    assert server.aborts == 1


async def test_failed_job_is_not_aborted(make_client, job_server_factory):
    server = job_server_factory(statuses=[{"job": {"status": "failed", "errorMessage": "bad audio"}}])

    with pytest.raises(JobFailedError):
        await make_client(server).run_job(audio(), False)

    assert server.aborts == 0
