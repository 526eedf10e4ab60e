"""
Storage backends for backup archives.

Every backend lays artifacts out as::

    <prefix>/<instance_id>/<timestamp>/<archive file>

where ``timestamp`` is fixed-width (``%Y%m%d%H%M%S`` by default) so that
string order of keys equals chronological order.

Supports:
- S3Storage: Upload to AWS S3 or an S3-compatible service
- LocalStorage: Store in a local directory
"""

import os
import shutil
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from stashly import constants


logger = logging.getLogger(__name__)

SEP = constants.PREFIX_SEPARATOR


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class StorageConnectError(StorageError):
    """Raised when a storage session cannot be established."""
    pass


class StorageUploadError(StorageError):
    """Raised when an upload fails."""
    pass


class StorageDeleteError(StorageError):
    """Raised when a delete fails. Objects deleted before the failure stay deleted."""
    pass


def build_prefix(*segments: str) -> str:
    """
    Join non-empty key segments with a single separator and a trailing one.

    ``build_prefix('backups/', 'db1')`` -> ``'backups/db1/'``;
    no segments at all yield an empty prefix.
    """
    parts = [s.strip(SEP) for s in segments if s and s.strip(SEP)]
    if not parts:
        return ''
    return SEP.join(parts) + SEP


def _client_error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


class Storage(ABC):
    """
    Capability interface shared by all storage backends.

    Keys returned by ``upload`` and ``list`` are full keys including the
    prefix; ``trim_prefix`` reduces listed keys to their timestamp segment.
    """

    def __init__(self, prefix: str = '', date_time_layout: str = constants.DEFAULT_DATE_TIME_LAYOUT):
        self.prefix = prefix
        self.date_time_layout = date_time_layout

    @abstractmethod
    def init(self):
        """Establish connection/session state. Raises StorageConnectError."""

    @abstractmethod
    def name(self) -> str:
        """Human readable backend name."""

    @abstractmethod
    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """Upload a file under a new timestamped key and return the key."""

    @abstractmethod
    def list(self) -> List[str]:
        """Return keys one level below the prefix (non-recursive)."""

    @abstractmethod
    def delete(self, key: str, recursive: bool = False):
        """Delete a key, and everything below it when recursive."""

    def trim_prefix(self, keys: List[str]) -> List[str]:
        """Strip the configured prefix and any trailing separator from keys."""
        trimmed = []
        for key in keys:
            if self.prefix and key.startswith(self.prefix):
                key = key[len(self.prefix):]
            trimmed.append(key.rstrip(SEP))
        return trimmed

    def full_key(self, key: str) -> str:
        """Prepend the configured prefix to a trimmed key."""
        return f"{self.prefix}{key}"

    def timestamped_prefix(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        return build_prefix(self.prefix, now.strftime(self.date_time_layout))

    def build_key(self, local_path: str, now: Optional[datetime] = None) -> str:
        """Key for a file uploaded now: ``<prefix><timestamp>/<basename>``."""
        return f"{self.timestamped_prefix(now)}{os.path.basename(local_path)}"


class S3Storage(Storage):
    """
    Handler for uploading backups to S3 or an S3-compatible service.
    """

    # Use multipart upload for files larger than 100MB, in 10MB parts
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint: Optional[str] = None,
        prefix: str = '',
        date_time_layout: str = constants.DEFAULT_DATE_TIME_LAYOUT
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint: Custom endpoint URL for S3-compatible services
            prefix: Key prefix, normally built with build_prefix()
            date_time_layout: strftime layout of the timestamp segment
        """
        super().__init__(prefix, date_time_layout)
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint = endpoint or None
        self.s3_client = None

    def init(self):
        """
        Create the S3 client and check bucket access.

        Raises:
            StorageConnectError: If the client cannot be created or the bucket is unreachable
        """
        try:
            client_config = None
            if self.endpoint:
                # Most S3-compatible services expect path-style addressing
                client_config = BotoConfig(s3={'addressing_style': 'path'})

            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=self.access_key or None,
                aws_secret_access_key=self.secret_key or None,
                region_name=self.region or None,
                endpoint_url=self.endpoint,
                config=client_config
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageConnectError(f"Failed to initialize S3 client: {e}")

        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageConnectError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageConnectError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageConnectError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageConnectError(f"Failed to connect to S3: {e}")

    def name(self) -> str:
        return f"s3 ({self.bucket_name})"

    def _client(self):
        if self.s3_client is None:
            raise StorageError("S3 storage not initialized. Call init() first.")
        return self.s3_client

    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file
            cancellation_check: Optional function called between parts; raises to abort

        Returns:
            S3 key of uploaded file

        Raises:
            StorageUploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageUploadError(f"Local file not found: {local_path}")

        client = self._client()
        s3_key = self.build_key(local_path)

        logger.info(f"Uploading {local_path} to s3://{self.bucket_name}/{s3_key}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(client, local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(client, local_path, s3_key)

        except ClientError as e:
            raise StorageUploadError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageUploadError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageUploadError(f"Failed to read {local_path} for upload: {e}")

        logger.info(f"Uploaded {local_path} to s3://{self.bucket_name}/{s3_key}")
        return s3_key

    def _simple_upload(self, client, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, client, local_path: str, s3_key: str, cancellation_check=None):
        """
        Upload large file using multipart upload with cancellation support.

        The upload is aborted on any error, cancellation included.
        """
        response = client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            try:
                client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def list(self) -> List[str]:
        """
        List keys directly under the prefix.

        Returns:
            Common prefixes (one per backup run) plus any objects at the prefix root

        Raises:
            StorageError: If listing fails
        """
        client = self._client()
        keys = []

        try:
            paginator = client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix, Delimiter=SEP):
                for obj in page.get('Contents', []):
                    if obj['Key'] != self.prefix:
                        keys.append(obj['Key'])
                for common_prefix in page.get('CommonPrefixes', []):
                    keys.append(common_prefix['Prefix'])

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

        return keys

    def delete(self, key: str, recursive: bool = False):
        """
        Delete an object, or a whole backup "directory" when recursive.

        Args:
            key: Full S3 key
            recursive: Delete every object below key first

        Raises:
            StorageDeleteError: If any deletion fails (no rollback)
        """
        client = self._client()

        try:
            if recursive:
                child_prefix = key if key.endswith(SEP) else key + SEP
                logger.warning(f"Recursively deleting objects in s3://{self.bucket_name}/{child_prefix}")

                paginator = client.get_paginator('list_objects_v2')
                for page in paginator.paginate(Bucket=self.bucket_name, Prefix=child_prefix):
                    for obj in page.get('Contents', []):
                        client.delete_object(Bucket=self.bucket_name, Key=obj['Key'])
                        logger.info(f"Deleted object s3://{self.bucket_name}/{obj['Key']}")

            client.delete_object(Bucket=self.bucket_name, Key=key)
            logger.info(f"Deleted key {key}")

        except ClientError as e:
            raise StorageDeleteError(f"S3 delete of {key} failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageDeleteError(f"Failed to delete {key} from S3: {e}")


class LocalStorage(Storage):
    """
    Handler for storing backups in the local filesystem.

    Uses the same key layout as S3 below base_path, with one directory
    per backup run.
    """

    def __init__(self, base_path: str, prefix: str = '', date_time_layout: str = constants.DEFAULT_DATE_TIME_LAYOUT):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for backups
            prefix: Key prefix, normally built with build_prefix()
            date_time_layout: strftime layout of the timestamp segment
        """
        super().__init__(prefix, date_time_layout)
        self.base_path = Path(base_path)

    def init(self):
        """Create the base directory. Raises StorageConnectError."""
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageConnectError(f"Failed to create local storage directory: {e}")

        if not os.access(self.base_path, os.W_OK):
            raise StorageConnectError(f"Local storage directory is not writable: {self.base_path}")

    def name(self) -> str:
        return f"local ({self.base_path})"

    def upload(self, local_path: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Copy archive into local storage.

        Returns:
            Key of the stored file (relative to base_path)

        Raises:
            StorageUploadError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise StorageUploadError(f"Local file not found: {local_path}")

        if cancellation_check:
            cancellation_check()

        key = self.build_key(local_path)
        dest_path = self.base_path / key

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
        except PermissionError as e:
            raise StorageUploadError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise StorageUploadError(f"Failed to store locally: {e}")

        logger.info(f"Stored {local_path} at {dest_path}")
        return key

    def list(self) -> List[str]:
        """List entries directly under the prefix; directories get a trailing separator."""
        prefix_path = self.base_path / self.prefix

        if not prefix_path.is_dir():
            return []

        try:
            keys = []
            for entry in sorted(prefix_path.iterdir()):
                keys.append(f"{self.prefix}{entry.name}{SEP if entry.is_dir() else ''}")
            return keys
        except OSError as e:
            raise StorageError(f"Failed to list local files: {e}")

    def delete(self, key: str, recursive: bool = False):
        """
        Delete a stored file or run directory.

        Raises:
            StorageDeleteError: If deletion fails
        """
        full_path = self.base_path / key.rstrip(SEP)

        try:
            if full_path.is_dir() and not full_path.is_symlink():
                if recursive:
                    shutil.rmtree(full_path)
                else:
                    full_path.rmdir()
            elif full_path.exists() or full_path.is_symlink():
                full_path.unlink()
        except PermissionError as e:
            raise StorageDeleteError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise StorageDeleteError(f"Failed to delete {full_path}: {e}")

        logger.info(f"Deleted key {key}")


def create_storage(config) -> Storage:
    """
    Factory function to create the configured storage backend.

    Args:
        config: Config instance

    Returns:
        S3Storage or LocalStorage instance (not yet initialized)

    Raises:
        ValueError: If the backend is unknown
    """
    storage_config = config.storage
    prefix = build_prefix(storage_config.prefix, config.app.instance_id)
    layout = config.backup.date_time_layout

    if storage_config.backend == 's3':
        return S3Storage(
            access_key=storage_config.access_key,
            secret_key=storage_config.secret_key,
            bucket_name=storage_config.bucket,
            region=storage_config.region,
            endpoint=storage_config.endpoint,
            prefix=prefix,
            date_time_layout=layout
        )
    elif storage_config.backend == 'local':
        return LocalStorage(storage_config.local_path, prefix=prefix, date_time_layout=layout)
    else:
        raise ValueError(f"Invalid storage backend: {storage_config.backend}")
