from typing import Optional

from loguru import logger

from scribeflow.schemas.transcription import JobStatus

_RANKS = {
    JobStatus.QUEUED: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.ACTIVE: 2,
    JobStatus.SUCCEEDED: 3,
    JobStatus.FAILED: 3,
    JobStatus.EXPIRED: 3,
}


class JobStateMachine:
    """
    Client-side projection of a remote job's status

    Transitions follow queued -> processing -> active -> terminal. Forward
    and same-state observations are accepted. Backward moves and unknown
    status strings are logged and ignored. Terminal states absorb.
    """

    def __init__(self, job_id: str, initial: JobStatus = JobStatus.QUEUED):
        self.job_id = job_id
        self.status = initial
        self.stage: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def observe(self, raw_status: Optional[str], stage: Optional[str] = None) -> JobStatus:
        """
        Feed a polled status string into the machine

        Args:
            raw_status: Status as reported by the service
            stage: Optional sub-stage reported with the status

        Returns:
            The status after the transition
        """
        value = (raw_status or "").strip().lower()
        try:
            observed = JobStatus(value)
        except ValueError:
            logger.warning(f"Job {self.job_id} reported unknown status {raw_status!r}; keeping {self.status.value}")
            return self.status

        if self.is_terminal:
            if observed != self.status:
                logger.warning(f"Job {self.job_id} is already {self.status.value}; ignoring {observed.value}")
            return self.status

        if _RANKS[observed] < _RANKS[self.status]:
            logger.warning(f"Job {self.job_id} moved backwards from {self.status.value} to {observed.value}; ignoring")
            return self.status

        if observed != self.status:
            logger.debug(f"Job {self.job_id}: {self.status.value} -> {observed.value}")
        self.status = observed
        self.stage = (stage or "").strip().lower() or None
        return self.status
