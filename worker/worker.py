import threading
from typing import Callable, List, Optional

from loguru import logger

from common.errors import ExtractionError
from common.extraction import ExtractionService
from common.job_schema import Payload


def describe_failure(exc: BaseException) -> str:
    """Human-readable error for a failed attempt."""
    if isinstance(exc, ExtractionError):
        return exc.message
    return f"Unexpected error during extraction: {type(exc).__name__}: {exc}"


class ExtractionWorker(threading.Thread):
    """
    Runs one extraction attempt for one admitted job.

    The outcome is left on the worker (`addresses` on success, `error` on
    failure) and handed to `on_done`. Nothing raised by the service escapes.
    """

    def __init__(
        self,
        job_id: str,
        attempt: int,
        payload: Payload,
        extractor: ExtractionService,
        on_done: Callable[["ExtractionWorker"], None],
    ):
        super().__init__(daemon=True, name=f"extract-{job_id}-{attempt}")
        self.job_id = job_id
        self.attempt = attempt
        self.payload = payload
        self.extractor = extractor
        self.on_done = on_done
        self.addresses: Optional[List[str]] = None
        self.error: Optional[str] = None

    def run(self):
        logger.debug(f"Extracting addresses for {self.job_id} (attempt {self.attempt})")
        try:
            result = self.extractor.extract(self.payload.data, self.payload.media_type)
            if not isinstance(result, (list, tuple)) or not all(isinstance(a, str) for a in result):
                raise TypeError(f"extractor returned {type(result).__name__}, expected a list of strings")
            self.addresses = list(result)
        except BaseException as e:
            # anything escaping here would strand the job's slot
            self.error = describe_failure(e)
            if isinstance(e, ExtractionError):
                logger.warning(f"Extraction failed for {self.job_id} [{e.kind}]: {e.message}")
            else:
                logger.exception(f"Unexpected fault while extracting {self.job_id}")

        try:
            self.on_done(self)
        except Exception:
            logger.exception(f"Completion handler failed for {self.job_id}")

    @property
    def succeeded(self) -> bool:
        return self.error is None
