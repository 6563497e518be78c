import asyncio
import json
import math
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx
from loguru import logger
from pydantic import ValidationError

from scribeflow.core.config import Settings
from scribeflow.core.exceptions import (
    InputError,
    JobExpiredError,
    JobFailedError,
    ProtocolError,
    TranscriptionTimeoutError,
)
from scribeflow.schemas.transcription import (
    CreatedJob,
    JobStage,
    JobStatus,
    JobStatusResponse,
    PartUrlResponse,
    TranscriptionOptions,
    UploadPart,
    UploadPlan,
)
from scribeflow.services.audio_source import AudioSource
from scribeflow.services.base import ProgressCallback, Transcriber, no_progress
from scribeflow.services.job_state import JobStateMachine
from scribeflow.services.transcript_merger import has_timestamps, segments_to_srt
from scribeflow.utils.http import parse_json


class RemoteJobClient(Transcriber):
    """
    Client for the chunked-upload transcription job protocol

    One job per file: create, upload every part in order, complete, start,
    then poll until the job is terminal. Parts already uploaded are
    abandoned with an explicit abort call when the upload fails.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(client, config)
        self._sleep = sleep
        self._clock = clock
        self.jobs_url = f"{self.config.API_BASE_URL.rstrip('/')}/jobs"

    @property
    def headers(self) -> Dict[str, str]:
        if self.config.API_KEY:
            return {"x-api-key": self.config.API_KEY}
        return {}

    async def transcribe(
        self,
        source: AudioSource,
        options: TranscriptionOptions,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        return await self.run_job(source, options.timestamped, on_progress)

    async def run_job(
        self,
        source: AudioSource,
        timestamped: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Run one transcription job end to end

        Args:
            source: Audio to upload
            timestamped: Request subtitle output
            on_progress: Progress callback

        Returns:
            The transcript text

        Raises:
            TranscriptionError: Typed failure; the job is aborted first where needed
        """
        progress = on_progress or no_progress
        progress(2, "Preparing upload...")

        job, plan = await self.create_job(source, timestamped)
        logger.info(
            f"Created transcription job {job.id} for {source.filename} "
            f"({source.size} bytes, {plan.total_parts} parts, strategy={job.processing_strategy or 'direct'})"
        )

        try:
            if not plan.covers(source.size):
                raise ProtocolError(
                    f"Part plan of {plan.total_parts} x {plan.part_size_bytes} bytes "
                    f"does not match a {source.size} byte file"
                )
            parts = await self._upload_parts(source, job.id, plan, progress)
        except BaseException:
            await self._abort_quietly(job.id)
            raise

        try:
            progress(70, "Finalizing upload...")
            await self.complete_upload(job.id, parts)
            progress(75, "Chunking audio..." if job.is_chunked else "Transcribing audio...")
            return await self._await_transcript(job.id, timestamped, progress)
        except (JobFailedError, JobExpiredError, TranscriptionTimeoutError):
            # Jobs that reached processing are cleaned up server side
            raise
        except BaseException:
            await self._abort_quietly(job.id)
            raise

    async def create_job(self, source: AudioSource, timestamped: bool) -> Tuple[CreatedJob, UploadPlan]:
        """
        Create a job and return it with its upload plan

        Raises:
            ProtocolError: If the response lacks a job id
        """
        data = await self._send_json(
            "POST",
            self.jobs_url,
            "Create transcription job",
            headers=self.headers,
            json={
                "filename": source.filename,
                "contentType": source.content_type,
                "contentLengthBytes": source.size,
                "timestamped": timestamped,
            },
        )
        try:
            job = CreatedJob.model_validate(data.get("job"))
        except ValidationError as e:
            raise ProtocolError("Create transcription job returned no job id") from e

        try:
            plan = UploadPlan.model_validate(data.get("upload"))
        except ValidationError as e:
            await self._abort_quietly(job.id)
            raise ProtocolError("Server returned an invalid multipart upload plan") from e
        return job, plan

    async def get_part_url(self, job_id: str, part_number: int) -> str:
        data = await self._send_json(
            "GET",
            f"{self.jobs_url}/{job_id}/upload/part-url",
            f"Sign upload part {part_number}",
            headers=self.headers,
            params={"partNumber": part_number},
        )
        try:
            return PartUrlResponse.model_validate(data).part.url
        except ValidationError as e:
            raise ProtocolError(f"No signed URL returned for part {part_number}") from e

    async def upload_part(self, url: str, data: bytes, part_number: int, total_parts: int) -> str:
        """
        PUT one part to its signed URL

        Returns:
            The ETag the storage endpoint returned

        Raises:
            ProtocolError: If the response carries no ETag
        """
        response = await self._send("PUT", url, f"Part upload {part_number}/{total_parts}", content=data)
        etag = (response.headers.get("etag") or "").strip()
        if not etag:
            raise ProtocolError(f"Missing ETag for uploaded part {part_number}/{total_parts}")
        return etag

    async def complete_upload(self, job_id: str, parts: List[UploadPart]) -> None:
        await self._send_json(
            "POST",
            f"{self.jobs_url}/{job_id}/upload/complete",
            "Complete upload",
            headers=self.headers,
            json={"parts": [part.model_dump(by_alias=True) for part in parts]},
        )

    async def abort_upload(self, job_id: str) -> None:
        await self._send("POST", f"{self.jobs_url}/{job_id}/upload/abort", "Abort upload", headers=self.headers)

    async def start_job(self, job_id: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        """
        Ask the service to process the job

        Returns:
            The status code and, for a 200 response, the inline payload
        """
        response = await self._send("POST", f"{self.jobs_url}/{job_id}/start", "Start transcription", headers=self.headers)
        if response.status_code != 200 or not response.content:
            return response.status_code, None
        return response.status_code, parse_json(response, "Start transcription")

    async def get_status(self, job_id: str) -> JobStatusResponse:
        data = await self._send_json("GET", f"{self.jobs_url}/{job_id}", "Fetch job status", headers=self.headers)
        try:
            return JobStatusResponse.model_validate(data)
        except ValidationError as e:
            raise ProtocolError("Job status response was malformed") from e

    async def fetch_signed_text(self, url: str) -> str:
        response = await self._send("GET", url, "Fetch transcript")
        return response.text

    async def _upload_parts(
        self,
        source: AudioSource,
        job_id: str,
        plan: UploadPlan,
        progress: ProgressCallback,
    ) -> List[UploadPart]:
        parts = []
        total = plan.total_parts
        for part_number in range(1, total + 1):
            offset = (part_number - 1) * plan.part_size_bytes
            expected = min(plan.part_size_bytes, source.size - offset)

            url = await self.get_part_url(job_id, part_number)
            data = await source.read_range(offset, expected)
            if len(data) != expected:
                raise InputError(
                    f"Short read while uploading part {part_number}/{total} "
                    f"(expected {expected}, got {len(data)})"
                )

            progress(5 + math.floor(part_number / total * 60), f"Uploading audio ({part_number}/{total})...")
            etag = await self.upload_part(url, data, part_number, total)
            parts.append(UploadPart(part_number=part_number, etag=etag))
            logger.debug(f"Job {job_id}: uploaded part {part_number}/{total} ({expected} bytes)")

        logger.info(f"Job {job_id}: uploaded {total} parts")
        return parts

    async def _abort_quietly(self, job_id: str) -> None:
        try:
            await asyncio.shield(self.abort_upload(job_id))
            logger.info(f"Aborted upload for job {job_id}")
        except Exception as e:
            logger.warning(f"Failed to abort upload for job {job_id}: {e}")

    async def _await_transcript(self, job_id: str, timestamped: bool, progress: ProgressCallback) -> str:
        deadline = self._clock() + self.config.JOB_TIMEOUT

        status_code, payload = await self.start_job(job_id)
        last_kick = self._clock()
        if status_code == 200:
            inline = await self._extract_inline(payload, timestamped)
            if inline:
                logger.info(f"Job {job_id} returned its transcript inline")
                return inline

        state = JobStateMachine(job_id)
        while self._clock() < deadline:
            snapshot = await self.get_status(job_id)
            state.observe(snapshot.job.status, snapshot.job.stage)

            if state.status == JobStatus.SUCCEEDED:
                logger.info(f"Job {job_id} succeeded")
                return await self._resolve(snapshot, timestamped)
            if state.status == JobStatus.FAILED:
                message = (snapshot.job.error_message or "").strip() or "Transcription job failed."
                logger.error(f"Job {job_id} failed: {message}")
                raise JobFailedError(message)
            if state.status == JobStatus.EXPIRED:
                logger.error(f"Job {job_id} expired")
                raise JobExpiredError("Transcription job expired before it could complete. Please retry.")

            self._report_progress(snapshot, state, progress)

            if self._clock() - last_kick >= self.config.JOB_KICK_INTERVAL:
                logger.debug(f"Re-issuing start for job {job_id}")
                status_code, payload = await self.start_job(job_id)
                last_kick = self._clock()
                if status_code == 200:
                    inline = await self._extract_inline(payload, timestamped)
                    if inline:
                        return inline

            await self._sleep(self.config.JOB_POLL_INTERVAL)

        logger.error(f"Job {job_id} did not finish within {self.config.JOB_TIMEOUT:.0f}s")
        raise TranscriptionTimeoutError("Transcription timed out. Please try again in a few minutes.")

    def _report_progress(self, snapshot: JobStatusResponse, state: JobStateMachine, progress: ProgressCallback) -> None:
        report = snapshot.progress
        stage = ((report.stage if report else None) or state.stage or "").strip().lower()
        chunks_total = report.chunks_total if report else None
        chunks_succeeded = report.chunks_succeeded if report else None
        expected_chunks = snapshot.job.chunk_count

        if stage == JobStage.CHUNKING.value:
            if expected_chunks and expected_chunks > 0 and chunks_total is not None:
                created = max(0, min(expected_chunks, math.floor(chunks_total)))
                progress(75 + math.floor(created / expected_chunks * 4), f"Chunking audio ({created}/{expected_chunks})...")
            else:
                progress(78, "Chunking audio...")
        elif stage == JobStage.TRANSCRIBING.value:
            if chunks_total and chunks_total > 0 and chunks_succeeded is not None:
                done = max(0, min(chunks_total, math.floor(chunks_succeeded)))
                total = math.floor(chunks_total)
                progress(80 + math.floor(done / chunks_total * 18), f"Transcribing chunks ({done}/{total})...")
            else:
                progress(82, "Transcribing audio...")
        elif stage == JobStage.ASSEMBLING.value:
            progress(99, "Assembling transcript...")
        elif stage:
            progress(80, f"Processing ({stage})...")
        else:
            progress(80, f"Processing ({state.status.value})...")

    async def _extract_inline(self, payload: Optional[Dict[str, Any]], timestamped: bool) -> Optional[str]:
        if not isinstance(payload, dict):
            return None

        text = payload.get("text") if isinstance(payload.get("text"), str) else ""
        verbose = payload.get("verbose_json")
        if timestamped and isinstance(verbose, dict) and isinstance(verbose.get("segments"), list):
            try:
                return segments_to_srt(verbose["segments"])
            except ValidationError as e:
                raise ProtocolError("Inline transcript carried malformed segments") from e

        if text.strip() and (not timestamped or has_timestamps(text)):
            return text.strip()

        urls = payload.get("transcript_urls")
        if not isinstance(urls, dict):
            return None
        if timestamped and isinstance(urls.get("json"), str):
            srt = await self._fetch_segments(urls["json"])
            if srt:
                return srt
        if isinstance(urls.get("text"), str):
            fetched = (await self.fetch_signed_text(urls["text"])).strip()
            if fetched:
                return fetched
        return None

    async def _resolve(self, snapshot: JobStatusResponse, timestamped: bool) -> str:
        links = snapshot.transcript
        if links:
            inline = (links.text or "").strip()
            if inline and (not timestamped or has_timestamps(inline)):
                return inline
            if timestamped and links.json_url:
                srt = await self._fetch_segments(links.json_url)
                if srt:
                    return srt
            if links.text_url:
                fetched = (await self.fetch_signed_text(links.text_url)).strip()
                if fetched:
                    return fetched

        raise ProtocolError("Transcription completed, but the transcript could not be retrieved. Please retry.")

    async def _fetch_segments(self, url: str) -> Optional[str]:
        body = await self.fetch_signed_text(url)
        try:
            data = json.loads(body)
        except ValueError:
            logger.debug("Transcript JSON could not be parsed; falling back to text")
            return None
        segments = data.get("segments") if isinstance(data, dict) else None
        if not isinstance(segments, list):
            return None
        try:
            return segments_to_srt(segments)
        except ValidationError:
            logger.debug("Transcript JSON carried malformed segments; falling back to text")
            return None
