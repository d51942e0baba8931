import io
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from loguru import logger
from PIL import Image

from common.config import PREVIEW_SIZE
from common.errors import UnreadablePayloadError
from common.job_schema import Payload


class PreviewStore:
    """
    Owns the thumbnail file allocated for each job.

    A preview is allocated once at submission and released once on removal.
    Releasing an id that is unknown or already released is a no-op.
    """

    def __init__(self, directory: Union[str, Path], size: int = PREVIEW_SIZE):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.size = size
        self._handles: Dict[str, Path] = {}
        self._lock = threading.Lock()

    def allocate(self, job_id: str, payload: Payload) -> str:
        """
        Decodes the payload, writes a PNG thumbnail and returns its path.
        Raises UnreadablePayloadError if the bytes are not a readable image.
        """
        with self._lock:
            if job_id in self._handles:
                raise ValueError(f"Preview already allocated for {job_id}")

        try:
            img = Image.open(io.BytesIO(payload.data))
            # Image.open is lazy; load() surfaces truncated data
            img.load()
        except Exception as e:
            raise UnreadablePayloadError(f"Unreadable image payload: {e}") from e

        dest = self.directory / f"{job_id}.png"
        try:
            img = img.convert("RGB")
            img.thumbnail((self.size, self.size))
            img.save(dest, format="PNG")
        except Exception as e:
            dest.unlink(missing_ok=True)
            raise UnreadablePayloadError(f"Could not render preview: {e}") from e

        with self._lock:
            self._handles[job_id] = dest
        logger.debug(f"Allocated preview {dest.name}")
        return str(dest)

    def release(self, job_id: str) -> bool:
        """Deletes the preview for job_id. Returns False if there was nothing to release."""
        with self._lock:
            path = self._handles.pop(job_id, None)
        if path is None:
            return False
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete preview {path}: {e}")
        logger.debug(f"Released preview {path.name}")
        return True

    def path_for(self, job_id: str) -> Optional[Path]:
        with self._lock:
            return self._handles.get(job_id)

    def close(self) -> None:
        """Releases every outstanding preview."""
        with self._lock:
            ids = list(self._handles)
        for job_id in ids:
            self.release(job_id)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
