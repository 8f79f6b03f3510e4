"""Upload acceptance: the producing side of the pipeline.

submit_upload() is what a catalog service calls once a movie row exists:

1. create a PENDING processing record
2. upload the raw file to the raw bucket
3. store the raw object key on the record
4. publish a TranscodingJob

If step 2 or 4 fails, the record is marked FAILED with the cause and the
error is re-raised to the caller.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from .errors import QueueError, RecordUpdateFailed, StorageError, UploadFailed
from .queue.backends import JobQueue, RecordStore
from .queue.models import TranscodingJob, UploadStatus, VideoProcessingRecord
from .storage import ObjectStorage
from .transcoder import artifact_prefix

logger = logging.getLogger(__name__)

RAW_KEY_PREFIX = "raw-videos/"


def raw_object_key(movie_id: int, filename: str) -> str:
    """raw-videos/movie-{id}{ext}, keeping the upload's extension."""
    return f"{RAW_KEY_PREFIX}movie-{movie_id}{Path(filename).suffix.lower()}"


class _ProgressReader:
    """File wrapper that reports bytes read to a tqdm bar."""

    def __init__(self, f, bar: tqdm):
        self._f = f
        self._bar = bar

    def read(self, size: int = -1) -> bytes:
        chunk = self._f.read(size)
        self._bar.update(len(chunk))
        return chunk

    def __getattr__(self, name):
        return getattr(self._f, name)


def submit_upload(
    storage: ObjectStorage,
    queue: JobQueue,
    records: RecordStore,
    movie_id: int,
    file_path,
    raw_bucket: str,
    show_progress: bool = False,
) -> TranscodingJob:
    """Accept a raw video for transcoding.

    Args:
        storage: Object store holding the raw bucket
        queue: Queue the worker consumes
        records: Processing record store
        movie_id: Catalog movie identifier
        file_path: Local path of the raw video
        raw_bucket: Bucket for raw uploads
        show_progress: Draw a tqdm progress bar while uploading

    Returns:
        The published TranscodingJob

    Raises:
        RecordConflict: A record already exists for movie_id
        UploadFailed: Raw upload failed (record marked FAILED)
        QueueError: Publishing failed (record marked FAILED)
    """
    file_path = Path(file_path)
    records.create_record(VideoProcessingRecord(movie_id=movie_id))

    key = raw_object_key(movie_id, file_path.name)
    try:
        size = os.path.getsize(file_path)
        with open(file_path, "rb") as f, tqdm(
            total=size,
            unit="B",
            unit_scale=True,
            unit_divisor=1024,
            desc=f"movie-{movie_id}",
            disable=not show_progress,
        ) as bar:
            storage.put(raw_bucket, key, _ProgressReader(f, bar), "application/octet-stream")
    except (StorageError, OSError) as e:
        _mark_failed(records, movie_id, f"Failed to upload file: {e}")
        raise UploadFailed(f"failed to upload raw video for movie_id={movie_id}: {e}") from e

    records.update_record(movie_id, {"raw_file_path": key})

    job = TranscodingJob(movie_id=movie_id, raw_file_path=key)
    try:
        queue.publish(job)
    except QueueError as e:
        _mark_failed(records, movie_id, f"Failed to queue transcoding job: {e}")
        raise

    logger.info("Accepted upload for movie_id=%d as %s", movie_id, key, extra={"movie_id": movie_id})
    return job


def purge_artifacts(
    storage: ObjectStorage,
    movie_id: int,
    processed_bucket: str,
    raw_bucket: Optional[str] = None,
    raw_key: Optional[str] = None,
) -> int:
    """Delete a movie's published renditions (and optionally its raw upload).

    Returns:
        Number of objects removed
    """
    deleted = storage.delete_prefix(processed_bucket, artifact_prefix(movie_id))
    if raw_bucket and raw_key:
        if storage.exists(raw_bucket, raw_key):
            storage.delete(raw_bucket, raw_key)
            deleted += 1
    logger.info("Purged %d objects for movie_id=%d", deleted, movie_id, extra={"movie_id": movie_id})
    return deleted


def _mark_failed(records: RecordStore, movie_id: int, message: str) -> None:
    try:
        records.update_record(movie_id, {
            "upload_status": UploadStatus.FAILED,
            "error_message": message,
        })
    except RecordUpdateFailed as e:
        logger.error("Could not mark movie_id=%d FAILED: %s", movie_id, e, extra={"movie_id": movie_id})
