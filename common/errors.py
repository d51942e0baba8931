class UploadQueueError(Exception):
    """Base class for upload queue errors."""


class UnreadablePayloadError(UploadQueueError):
    """The submitted payload could not be decoded as an image. No job is created."""


class QueueClosedError(UploadQueueError):
    """Raised by submit() after the queue has been shut down."""


class ExtractionError(UploadQueueError):
    """A modelled failure reported by the extraction service."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return self.message
