"""Job queue, processing records and the worker loop."""

from .backends import JobQueue, RecordStore
from .models import StateTransition, TranscodingJob, UploadStatus, VideoProcessingRecord
from .processor import JobProcessor, ProcessorStats
from .redis_backend import RedisJobQueue
from .sqlite_backend import SQLiteJobQueue, SQLiteRecordStore

__all__ = [
    "JobQueue",
    "RecordStore",
    "StateTransition",
    "TranscodingJob",
    "UploadStatus",
    "VideoProcessingRecord",
    "JobProcessor",
    "ProcessorStats",
    "RedisJobQueue",
    "SQLiteJobQueue",
    "SQLiteRecordStore",
]
