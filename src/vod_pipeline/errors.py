"""Error taxonomy for the transcoding pipeline.

Job-level failures (the ones that end up in a record's ``error_message``):

- DownloadFailed: raw object missing or unreadable
- NoRenditionSucceeded: every quality profile failed to encode
- UploadFailed: publishing artifacts to the processed bucket failed

Bookkeeping and infrastructure errors:

- RecordUpdateFailed: the record store could not apply a status change
- StorageError / ObjectNotFound: object store transport errors
- QueueError: queue transport or payload errors
- JobCancelled: cooperative cancellation was observed
"""


class PipelineError(Exception):
    """Base class for every error raised by vod_pipeline."""


class DownloadFailed(PipelineError):
    """Raw object could not be fetched into the working directory."""


class UploadFailed(PipelineError):
    """An artifact could not be published to the processed bucket."""


class NoRenditionSucceeded(PipelineError):
    """Every configured quality profile failed to encode."""

    def __init__(self, message: str, failures=None):
        super().__init__(message)
        self.failures = dict(failures or {})


AllRenditionsFailed = NoRenditionSucceeded


class JobCancelled(PipelineError):
    """Cancellation was requested while waiting or working."""


class RecordUpdateFailed(PipelineError):
    """A processing record could not be created or updated."""


class RecordConflict(RecordUpdateFailed):
    """A record already exists for this movie."""


class StorageError(PipelineError):
    """Object store transport error."""


class ObjectNotFound(StorageError):
    """Requested object does not exist."""

    def __init__(self, bucket: str, key: str):
        super().__init__(f"object not found: {bucket}/{key}")
        self.bucket = bucket
        self.key = key


class QueueError(PipelineError):
    """Queue transport error or undecodable message."""

