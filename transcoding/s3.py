import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

from .errors import UploadError
from .transcoder import MASTER_MANIFEST
from .utils import trim_tail

logger = logging.getLogger(__name__)

THUMBNAIL_NAME = "thumb.jpg"

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_version_lock = threading.Lock()
_last_version = 0


def get_s3_client():
    """
    SDK client for server-side uploads to the S3-compatible store (R2/MinIO/S3).
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    return session.client(
        "s3",
        endpoint_url=settings.S3_ENDPOINT_URL,
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
            retries={"max_attempts": 5, "mode": "standard"},
            max_pool_connections=max(10, settings.S3_UPLOAD_MAX_WORKERS * 2),
        ),
    )


def content_type_for(path) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def cache_control_for(path) -> str:
    """Playlists may be replaced by a later version; segments and thumbnails never change."""
    suffix = Path(path).suffix.lower()
    if suffix == ".m3u8":
        return "no-cache"
    if suffix == ".ts":
        return "public, max-age=31536000, immutable"
    return "public, max-age=604800"


def public_url(key: str) -> str:
    return f"{settings.S3_PUBLIC_BASE_URL}/{key.lstrip('/')}"


def _next_version() -> int:
    """Epoch milliseconds, strictly increasing within this process."""
    global _last_version
    with _version_lock:
        _last_version = max(int(time.time() * 1000), _last_version + 1)
        return _last_version


def versioned_base_key(lesson_id) -> str:
    """videos/<lesson>/v<epoch-ms>; each processing run writes to a fresh prefix."""
    return f"videos/{lesson_id}/v{_next_version()}"


def _upload_one(client, path: Path, key: str, transfer_config: TransferConfig) -> str:
    extra = {
        "ContentType": content_type_for(path),
        "CacheControl": cache_control_for(path),
    }
    try:
        # upload_file streams from disk and switches to multipart above the threshold
        client.upload_file(str(path), settings.S3_BUCKET, key, ExtraArgs=extra, Config=transfer_config)
    except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
        raise UploadError(f"upload failed key={key}: {trim_tail(str(e), 500)}", key=key) from e
    logger.debug("uploaded %s", key)
    return key


def upload_tree(local_dir, base_key: str, *, client=None, max_workers: Optional[int] = None) -> List[str]:
    """
    Recursively upload all files under local_dir to <base_key>/<relative path>.

    Files go up in parallel; master.m3u8 goes up only after everything else
    succeeded. Any single failure fails the whole call with UploadError.
    Returns the uploaded keys.
    """
    s3 = client or get_s3_client()
    base = Path(local_dir)
    prefix = base_key.rstrip("/")
    max_workers = max_workers or settings.S3_UPLOAD_MAX_WORKERS
    transfer_config = TransferConfig(
        multipart_threshold=settings.S3_MULTIPART_THRESHOLD,
        multipart_chunksize=settings.S3_MULTIPART_THRESHOLD,
        use_threads=False,
    )

    files, manifests = [], []
    for p in sorted(base.rglob("*")):
        if not p.is_file():
            continue
        key = f"{prefix}/{p.relative_to(base).as_posix()}"
        if p.parent == base and p.name == MASTER_MANIFEST:
            manifests.append((p, key))
        else:
            files.append((p, key))

    logger.info("uploading %d files to %s", len(files) + len(manifests), prefix)

    uploaded = []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="s3-upload") as pool:
        futures = [pool.submit(_upload_one, s3, p, key, transfer_config) for p, key in files]
        try:
            for fut in as_completed(futures):
                uploaded.append(fut.result())
        except UploadError:
            for f in futures:
                f.cancel()
            raise

    for p, key in manifests:
        uploaded.append(_upload_one(s3, p, key, transfer_config))
    return uploaded


@dataclass(frozen=True)
class UploadResult:
    base_key: str
    manifest_url: str
    thumbnail_url: Optional[str]
    keys: List[str]


class StorageUploader:
    """Publishes a job's output directory under a fresh versioned prefix."""

    def __init__(self, client=None, max_workers: Optional[int] = None):
        self._client = client
        self.max_workers = max_workers

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def upload_output(self, lesson_id, output_dir, *, has_thumbnail: bool) -> UploadResult:
        base_key = versioned_base_key(lesson_id)
        keys = upload_tree(output_dir, base_key, client=self.client, max_workers=self.max_workers)
        return UploadResult(
            base_key=base_key,
            manifest_url=public_url(f"{base_key}/{MASTER_MANIFEST}"),
            thumbnail_url=public_url(f"{base_key}/{THUMBNAIL_NAME}") if has_thumbnail else None,
            keys=keys,
        )
