import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from scribeflow.core.config import Settings, settings as default_settings
from scribeflow.core.exceptions import TransientError, describe_error
from scribeflow.schemas.transcription import TranscriptionAttempt
from scribeflow.services.base import ProgressCallback, no_progress

T = TypeVar("T")


class UploadScheduler:
    """
    Admission control and bounded retry for transcription requests

    At most MAX_CONCURRENT_UPLOADS requests hold a slot at once; the rest
    wait in line and get periodic queue updates. Calls are retried on
    TransientError only, with exponential backoff.

    One scheduler is meant to be shared by every transcription in a process.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or default_settings
        self.max_concurrent_uploads = max(1, self.config.MAX_CONCURRENT_UPLOADS)
        self.max_retries = self.config.MAX_RETRIES
        self.active_uploads = 0
        self.waiting = 0
        self.retry_count = 0
        self._sleep = sleep
        self._condition = asyncio.Condition()

    @asynccontextmanager
    async def admission(self, on_progress: Optional[ProgressCallback] = None) -> AsyncIterator[None]:
        """
        Hold one upload slot for the duration of the block

        The slot is released even when the block raises or is cancelled.
        """
        progress = on_progress or no_progress
        async with self._condition:
            if self.active_uploads >= self.max_concurrent_uploads:
                await self._wait_for_slot(progress)
            self.active_uploads += 1

        try:
            yield
        finally:
            async with self._condition:
                self.active_uploads -= 1
                self._condition.notify()

    async def _wait_for_slot(self, progress: ProgressCallback) -> None:
        ahead = self.active_uploads + self.waiting
        if ahead <= 1:
            progress(2, "Waiting for the previous transcription to finish...")
        else:
            progress(2, f"Waiting for {ahead} transcriptions ahead to finish...")
        logger.info(f"Transcription queued behind {ahead} others")

        self.waiting += 1
        started = time.monotonic()
        try:
            while self.active_uploads >= self.max_concurrent_uploads:
                try:
                    await asyncio.wait_for(self._condition.wait(), timeout=self.config.QUEUE_UPDATE_INTERVAL)
                except asyncio.TimeoutError:
                    progress(2, f"Waiting in queue ({int(time.monotonic() - started)}s)...")
        finally:
            self.waiting -= 1

    async def retrying(
        self,
        call: Callable[[], Awaitable[T]],
        on_progress: Optional[ProgressCallback] = None,
        attempt: Optional[TranscriptionAttempt] = None,
    ) -> T:
        """
        Run call, retrying transient failures with exponential backoff

        Args:
            call: Zero-argument coroutine factory, invoked once per try
            on_progress: Progress callback for retry notices
            attempt: Attempt record whose retry counter is updated; no retry
                starts once it is over its time budget

        Returns:
            Whatever call returns

        Raises:
            TransientError: When every try failed transiently
            TranscriptionError: Any non-transient failure, unchanged
        """
        progress = on_progress or no_progress

        def before_sleep(retry_state: RetryCallState) -> None:
            self.retry_count += 1
            if attempt is not None:
                attempt.retry_count += 1
            number = retry_state.attempt_number
            error = retry_state.outcome.exception()
            logger.warning(
                f"Transient failure on try {number}/{self.max_retries + 1}, "
                f"retrying in {retry_state.next_action.sleep:.1f}s: {error}"
            )
            progress(5, f"Retry {number}/{self.max_retries}: {describe_error(error, self.config.ERROR_MESSAGE_MAX_LENGTH)}")

        def over_budget(retry_state: RetryCallState) -> bool:
            if attempt is None or not attempt.over_budget:
                return False
            logger.warning(
                f"Not retrying after {attempt.elapsed:.1f}s, over the {attempt.timeout_seconds:.0f}s budget"
            )
            return True

        retryer = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1) | over_budget,
            wait=wait_exponential(
                multiplier=self.config.RETRY_DELAY,
                min=self.config.RETRY_DELAY,
                max=self.config.RETRY_MAX_DELAY,
            ),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
            sleep=self._sleep,
            before_sleep=before_sleep,
        )
        async for try_ in retryer:
            with try_:
                return await call()

    async def submit(
        self,
        call: Callable[[], Awaitable[T]],
        on_progress: Optional[ProgressCallback] = None,
        attempt: Optional[TranscriptionAttempt] = None,
    ) -> T:
        """Admit, then run call with retries"""
        async with self.admission(on_progress):
            return await self.retrying(call, on_progress, attempt)

    def diagnostics(self) -> Dict[str, int]:
        return {
            "active_uploads": self.active_uploads,
            "waiting": self.waiting,
            "max_concurrent_uploads": self.max_concurrent_uploads,
            "retry_count": self.retry_count,
        }
