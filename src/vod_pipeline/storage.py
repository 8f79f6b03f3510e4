"""Object storage adapters.

Supports S3-compatible stores (MinIO, AWS) through boto3, and a local
filesystem layout with one directory per bucket for development and tests.

Two logical buckets are used: a private raw bucket for source uploads and a
public-read processed bucket for renditions and playlists.
"""

import json
import logging
import os
import shutil
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ObjectNotFound, StorageError
from .models import StorageConfig

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def guess_content_type(path) -> str:
    """Content type for an HLS artifact based on its extension."""
    return CONTENT_TYPES.get(Path(str(path)).suffix.lower(), DEFAULT_CONTENT_TYPE)


def public_read_policy(bucket: str) -> str:
    """Bucket policy allowing anonymous GetObject (for HLS players)."""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"AWS": ["*"]},
                "Action": ["s3:GetObject"],
                "Resource": [f"arn:aws:s3:::{bucket}/*"],
            }
        ],
    })


class ObjectStorage(ABC):
    """Abstract object store used by both the producer and the worker."""

    @abstractmethod
    def get(self, bucket: str, key: str) -> BinaryIO:
        """Open an object for reading.

        Raises:
            ObjectNotFound: Object does not exist
            StorageError: Transport failure
        """
        pass

    @abstractmethod
    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> None:
        """Write an object, replacing any existing one."""
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        """Remove an object. Missing objects are not an error."""
        pass

    @abstractmethod
    def delete_prefix(self, bucket: str, prefix: str) -> int:
        """Remove every object whose key starts with prefix; return the count."""
        pass

    @abstractmethod
    def exists(self, bucket: str, key: str) -> bool:
        pass

    @abstractmethod
    def object_url(self, bucket: str, key: str) -> str:
        """Direct URL for an object (meaningful for the public bucket)."""
        pass

    @abstractmethod
    def ensure_buckets(self, raw_bucket: str, processed_bucket: str) -> None:
        """Create missing buckets; make processed_bucket publicly readable."""
        pass

    def download_file(self, bucket: str, key: str, dest) -> Path:
        """Copy an object to a local file and return its path."""
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        stream = self.get(bucket, key)
        try:
            with open(dest, "wb") as f:
                shutil.copyfileobj(stream, f)
        except OSError as e:
            raise StorageError(f"failed to write {dest}: {e}") from e
        finally:
            stream.close()
        return dest

    def upload_file(
        self,
        bucket: str,
        key: str,
        path,
        content_type: Optional[str] = None,
    ) -> None:
        """Upload a local file, guessing the content type from its extension."""
        with open(path, "rb") as f:
            self.put(bucket, key, f, content_type or guess_content_type(path))


class S3ObjectStorage(ObjectStorage):
    """S3/MinIO storage through boto3."""

    def __init__(self, config: StorageConfig, client=None):
        self.config = config
        self._client = client

    @property
    def client(self):
        """SDK client for server-side upload/download, created on first use."""
        if self._client is None:
            session = boto3.session.Session(
                aws_access_key_id=self.config.access_key,
                aws_secret_access_key=self.config.secret_key,
                region_name=self.config.region,
            )
            self._client = session.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                config=BotoConfig(
                    s3={"addressing_style": "path"},
                    signature_version="s3v4",
                ),
            )
        return self._client

    def get(self, bucket: str, key: str) -> BinaryIO:
        try:
            response = self.client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFound(bucket, key) from e
            raise StorageError(f"failed to get {bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to get {bucket}/{key}: {e}") from e
        return response["Body"]

    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> None:
        try:
            self.client.upload_fileobj(
                stream, bucket, key, ExtraArgs={"ContentType": content_type}
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to upload {bucket}/{key}: {e}") from e

    def download_file(self, bucket: str, key: str, dest) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(bucket, key, str(dest))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFound(bucket, key) from e
            raise StorageError(f"failed to download {bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to download {bucket}/{key}: {e}") from e
        return dest

    def delete(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to delete {bucket}/{key}: {e}") from e

    def delete_prefix(self, bucket: str, prefix: str) -> int:
        deleted = 0
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not objects:
                    continue
                # list_objects_v2 pages hold at most 1000 keys, the delete_objects limit
                response = self.client.delete_objects(
                    Bucket=bucket, Delete={"Objects": objects, "Quiet": True}
                )
                errors = response.get("Errors", [])
                if errors:
                    raise StorageError(
                        f"failed to delete {len(errors)} objects under {bucket}/{prefix}: "
                        f"{errors[0].get('Message', errors[0])}"
                    )
                deleted += len(objects)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"failed to delete prefix {bucket}/{prefix}: {e}") from e
        return deleted

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"failed to stat {bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"failed to stat {bucket}/{key}: {e}") from e

    def object_url(self, bucket: str, key: str) -> str:
        base = self.config.public_endpoint_url or self.config.endpoint_url
        if not base:
            return f"https://{bucket}.s3.{self.config.region}.amazonaws.com/{key}"
        return f"{base.rstrip('/')}/{bucket}/{key}"

    def ensure_buckets(self, raw_bucket: str, processed_bucket: str) -> None:
        for bucket, is_public in ((raw_bucket, False), (processed_bucket, True)):
            try:
                try:
                    self.client.head_bucket(Bucket=bucket)
                except ClientError as e:
                    if _error_code(e) not in _NOT_FOUND_CODES | {"NoSuchBucket"}:
                        raise
                    self.client.create_bucket(Bucket=bucket)
                    logger.info("Bucket '%s' created", bucket)

                if is_public:
                    self.client.put_bucket_policy(
                        Bucket=bucket, Policy=public_read_policy(bucket)
                    )
            except (ClientError, BotoCoreError) as e:
                raise StorageError(f"error preparing bucket '{bucket}': {e}") from e


class LocalObjectStorage(ObjectStorage):
    """Filesystem storage: <root>/<bucket>/<key>."""

    def __init__(self, root):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, bucket: str, key: str) -> Path:
        base = (self.root / bucket).resolve()
        path = (base / key).resolve()
        if base != path and base not in path.parents:
            raise StorageError(f"key escapes bucket: {key!r}")
        return path

    def get(self, bucket: str, key: str) -> BinaryIO:
        path = self._path(bucket, key)
        if not path.is_file():
            raise ObjectNotFound(bucket, key)
        try:
            return open(path, "rb")
        except OSError as e:
            raise StorageError(f"failed to open {bucket}/{key}: {e}") from e

    def put(
        self,
        bucket: str,
        key: str,
        stream: BinaryIO,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> None:
        path = self._path(bucket, key)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                shutil.copyfileobj(stream, f)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"failed to write {bucket}/{key}: {e}") from e
        finally:
            # Gone already after a successful replace
            tmp_path.unlink(missing_ok=True)

    def delete(self, bucket: str, key: str) -> None:
        try:
            self._path(bucket, key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"failed to delete {bucket}/{key}: {e}") from e

    def delete_prefix(self, bucket: str, prefix: str) -> int:
        base = (self.root / bucket).resolve()
        if not base.is_dir():
            return 0
        deleted = 0
        for path in sorted(base.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(base).as_posix()
            if key.startswith(prefix):
                self.delete(bucket, key)
                deleted += 1
        return deleted

    def exists(self, bucket: str, key: str) -> bool:
        return self._path(bucket, key).is_file()

    def object_url(self, bucket: str, key: str) -> str:
        return self._path(bucket, key).as_uri()

    def ensure_buckets(self, raw_bucket: str, processed_bucket: str) -> None:
        for bucket in (raw_bucket, processed_bucket):
            (self.root / bucket).mkdir(parents=True, exist_ok=True)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def create_storage(config: StorageConfig) -> ObjectStorage:
    """Build the configured storage backend."""
    if config.backend == "local":
        return LocalObjectStorage(config.local_path)
    return S3ObjectStorage(config)
