"""
storage.py: storage backends for transfer files.

Two interchangeable tiers implement the same contract:

* ``RemoteObjectStore``: S3-compatible object storage via boto3 (also
  exposes the native multipart protocol and presigned URLs).
* ``LocalFileStore``: a directory on the local filesystem.

Keys are namespaced by date and owning transfer/file so that sweeps can
enumerate them by prefix without a side index:

    prod/YYYY/MM/DD/t_<transferId>/f_<fileId>_<sanitizedName>   finalized files
    temp/YYYY/MM/DD/t_<transferId>/f_<fileId>/chunk_<index>     in-flight chunks
"""

import abc
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

import config
from errors import StorageError
from models import StorageType, utcnow

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
CHUNK_ROOT = "temp"
FINAL_ROOT = "prod"
CHUNK_KEY_RE = re.compile(r"^temp/\d{4}/\d{2}/\d{2}/t_[^/]+/f_[^/]+/chunk_(\d+)$")

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchUpload"}


# ─── Key layout ───────────────────────────────────────────────────────────────

def sanitize_file_name(name: Optional[str], max_length: int = MAX_NAME_LENGTH) -> str:
    """Restrict a name to [A-Za-z0-9._-] so it can be embedded in a key."""
    if not name:
        return "unknown"
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", name)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    cleaned = cleaned[:max_length]
    # ".." alone would still be a path segment
    if not cleaned or set(cleaned) == {"."}:
        return "unknown"
    return cleaned


def date_path(when: Optional[datetime] = None) -> str:
    when = when or utcnow()
    return f"{when.year:04d}/{when.month:02d}/{when.day:02d}"


def final_key(transfer_id: str, file_id: str, original_name: str, when: Optional[datetime] = None) -> str:
    return (
        f"{FINAL_ROOT}/{date_path(when)}/t_{sanitize_file_name(transfer_id)}"
        f"/f_{sanitize_file_name(file_id)}_{sanitize_file_name(original_name)}"
    )


def chunk_prefix(transfer_id: str, file_id: str, key_date: str) -> str:
    return f"{CHUNK_ROOT}/{key_date}/t_{sanitize_file_name(transfer_id)}/f_{sanitize_file_name(file_id)}/"


def chunk_key(prefix: str, index: int) -> str:
    return f"{prefix}chunk_{index}"


def chunk_index_of(key: str) -> Optional[int]:
    match = CHUNK_KEY_RE.match(key)
    return int(match.group(1)) if match else None


@dataclass
class StoredObject:
    key: str
    size: int
    last_modified: datetime   # naive UTC


@dataclass
class MultipartUploadInfo:
    key: str
    upload_id: str
    initiated: datetime       # naive UTC


def payload_size(data) -> int:
    """Size of a bytes payload or of a seekable binary file object (position is preserved)."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return len(data)
    position = data.tell()
    data.seek(0, os.SEEK_END)
    size = data.tell()
    data.seek(position)
    return size


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ─── Contract ─────────────────────────────────────────────────────────────────

class StorageBackend(abc.ABC):
    """put/get/delete/exists/list over opaque keys. Deleting a missing key succeeds."""

    storage_type: StorageType

    @abc.abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream",
            metadata: Optional[Dict[str, str]] = None) -> dict:
        ...

    @abc.abstractmethod
    def get(self, key: str) -> bytes:
        ...

    @abc.abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    def list_objects(self, prefix: str) -> List[StoredObject]:
        ...

    @abc.abstractmethod
    def signed_url(self, key: str, ttl: int, download_name: Optional[str] = None) -> str:
        ...

    def list(self, prefix: str) -> List[str]:
        return [obj.key for obj in self.list_objects(prefix)]


# ─── Remote tier ──────────────────────────────────────────────────────────────

def _get_s3_client():
    return boto3.client(
        "s3",
        endpoint_url=config.S3_ENDPOINT,
        aws_access_key_id=config.S3_ACCESS_KEY_ID,
        aws_secret_access_key=config.S3_SECRET_ACCESS_KEY,
        config=Config(
            signature_version="s3v4",
            connect_timeout=config.S3_CONNECT_TIMEOUT,
            read_timeout=config.S3_READ_TIMEOUT,
            retries={"max_attempts": config.S3_MAX_ATTEMPTS, "mode": "standard"},
        ),
        region_name=config.S3_REGION,
    )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class RemoteObjectStore(StorageBackend):

    storage_type = StorageType.REMOTE

    def __init__(self, client=None, bucket: str = None, public_url: str = None):
        self._s3 = client or _get_s3_client()
        self.bucket = bucket or config.TRANSFER_BUCKET
        public_url = config.TRANSFER_PUBLIC_URL if public_url is None else public_url
        self.public_url = public_url.rstrip("/")

    def ensure_bucket(self):
        try:
            self._s3.head_bucket(Bucket=self.bucket)
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES and _error_code(e) != "NoSuchBucket":
                raise StorageError(f"Bucket check failed: {e}") from e
            self._create_bucket()
        except BotoCoreError as e:
            raise StorageError(f"Object store unreachable: {e}") from e

    def _create_bucket(self):
        try:
            self._s3.create_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not create bucket {self.bucket}: {e}") from e
        logger.info(f"Created bucket: {self.bucket}")

    def put(self, key, data, content_type="application/octet-stream", metadata=None):
        size = payload_size(data)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"PUT failed for {key}: {e}", key=key) from e
        return {"key": key, "url": self.url(key), "size": size, "content_type": content_type}

    def get(self, key):
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise StorageError(f"Object missing: {key}", key=key) from e
            raise StorageError(f"GET failed for {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"GET failed for {key}: {e}", key=key) from e

    def delete(self, key):
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES:
                raise StorageError(f"DELETE failed for {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"DELETE failed for {key}: {e}", key=key) from e
        return True

    def exists(self, key):
        try:
            self._s3.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise StorageError(f"HEAD failed for {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"HEAD failed for {key}: {e}", key=key) from e

    def object_size(self, key: str) -> int:
        try:
            return int(self._s3.head_object(Bucket=self.bucket, Key=key)["ContentLength"])
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"HEAD failed for {key}: {e}", key=key) from e

    def list_objects(self, prefix):
        objects = []
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects.append(StoredObject(
                        key=obj["Key"],
                        size=int(obj.get("Size", 0)),
                        last_modified=_naive_utc(obj["LastModified"]),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"LIST failed for prefix {prefix}: {e}") from e
        return objects

    def signed_url(self, key, ttl, download_name=None):
        params = {"Bucket": self.bucket, "Key": key}
        if download_name:
            params["ResponseContentDisposition"] = f'attachment; filename="{download_name}"'
        try:
            return self._s3.generate_presigned_url("get_object", Params=params, ExpiresIn=ttl)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign URL for {key}: {e}", key=key) from e

    def url(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return self.signed_url(key, 86400)

    def presigned_put_url(self, key: str, ttl: int, content_type: str = "application/octet-stream") -> str:
        try:
            return self._s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign upload URL for {key}: {e}", key=key) from e

    # ─── Native multipart protocol ────────────────────────────────────────────

    def create_multipart_upload(self, key: str, content_type: str, metadata: Optional[dict] = None) -> str:
        try:
            response = self._s3.create_multipart_upload(
                Bucket=self.bucket, Key=key, ContentType=content_type, Metadata=metadata or {},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"CreateMultipartUpload failed for {key}: {e}", key=key) from e
        return response["UploadId"]

    def presign_upload_part(self, key: str, upload_id: str, part_number: int, ttl: int) -> str:
        try:
            return self._s3.generate_presigned_url(
                "upload_part",
                Params={"Bucket": self.bucket, "Key": key, "UploadId": upload_id, "PartNumber": part_number},
                ExpiresIn=ttl,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign part {part_number} for {key}: {e}", key=key) from e

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        try:
            response = self._s3.upload_part(
                Bucket=self.bucket, Key=key, UploadId=upload_id, PartNumber=part_number, Body=data,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"UploadPart {part_number} failed for {key}: {e}", key=key) from e
        return response["ETag"]

    def complete_multipart_upload(self, key: str, upload_id: str, parts: List[dict]) -> str:
        """``parts`` are ``{"PartNumber": n, "ETag": etag}`` in ascending order."""
        try:
            response = self._s3.complete_multipart_upload(
                Bucket=self.bucket, Key=key, UploadId=upload_id, MultipartUpload={"Parts": parts},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"CompleteMultipartUpload failed for {key}: {e}", key=key) from e
        return response.get("ETag", "")

    def abort_multipart_upload(self, key: str, upload_id: str) -> bool:
        try:
            self._s3.abort_multipart_upload(Bucket=self.bucket, Key=key, UploadId=upload_id)
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND_CODES:
                raise StorageError(f"AbortMultipartUpload failed for {key}: {e}", key=key) from e
        except BotoCoreError as e:
            raise StorageError(f"AbortMultipartUpload failed for {key}: {e}", key=key) from e
        return True

    def list_multipart_uploads(self, prefix: str = "") -> List[MultipartUploadInfo]:
        uploads = []
        try:
            paginator = self._s3.get_paginator("list_multipart_uploads")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for upload in page.get("Uploads", []):
                    uploads.append(MultipartUploadInfo(
                        key=upload["Key"],
                        upload_id=upload["UploadId"],
                        initiated=_naive_utc(upload["Initiated"]),
                    ))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"ListMultipartUploads failed: {e}") from e
        return uploads

    def get_health(self) -> dict:
        try:
            self._s3.head_bucket(Bucket=self.bucket)
            return {"status": "healthy", "backend": "s3", "bucket": self.bucket}
        except (ClientError, BotoCoreError) as e:
            return {"status": "degraded", "backend": "s3", "error": str(e)}


# ─── Local tier ───────────────────────────────────────────────────────────────

class LocalFileStore(StorageBackend):

    storage_type = StorageType.LOCAL

    def __init__(self, root: str = None, url_signer=None):
        self.root = os.path.abspath(root or config.LOCAL_STORAGE_DIR)
        os.makedirs(self.root, exist_ok=True)
        self._url_signer = url_signer

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if os.path.commonpath([path, self.root]) != self.root:
            raise StorageError(f"Key escapes storage root: {key}", key=key)
        return path

    def put(self, key, data, content_type="application/octet-stream", metadata=None):
        path = self._path(key)
        size = payload_size(data)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            tmp_path = f"{path}.part"
            with open(tmp_path, "wb") as f:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    f.write(data)
                else:
                    shutil.copyfileobj(data, f)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Local PUT failed for {key}: {e}", key=key) from e
        return {"key": key, "url": None, "size": size, "content_type": content_type}

    def get(self, key):
        try:
            with open(self._path(key), "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise StorageError(f"Object missing: {key}", key=key) from e
        except OSError as e:
            raise StorageError(f"Local GET failed for {key}: {e}", key=key) from e

    def delete(self, key):
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Local DELETE failed for {key}: {e}", key=key) from e
        return True

    def exists(self, key):
        return os.path.isfile(self._path(key))

    def path_for(self, key: str) -> str:
        return self._path(key)

    def list_objects(self, prefix):
        # Walk from the deepest directory the prefix names, then filter on the full prefix
        base_dir = self._path(prefix.rsplit("/", 1)[0]) if "/" in prefix else self.root
        objects = []
        if not os.path.isdir(base_dir):
            return objects
        for dirpath, _dirnames, filenames in os.walk(base_dir):
            for fname in filenames:
                if fname.endswith(".part"):
                    continue
                full = os.path.join(dirpath, fname)
                key = os.path.relpath(full, self.root).replace(os.sep, "/")
                if not key.startswith(prefix):
                    continue
                try:
                    st = os.stat(full)
                except FileNotFoundError:
                    continue
                objects.append(StoredObject(
                    key=key,
                    size=st.st_size,
                    last_modified=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).replace(tzinfo=None),
                ))
        return sorted(objects, key=lambda o: o.key)

    def signed_url(self, key, ttl, download_name=None):
        if self._url_signer is None:
            raise StorageError("Local store has no URL signer configured", key=key)
        return self._url_signer(key, ttl, download_name)
