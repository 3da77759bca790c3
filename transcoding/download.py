from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import requests
from django.conf import settings

from .errors import DownloadError
from .utils import ensure_dir, trim_tail

logger = logging.getLogger(__name__)

# Client errors that may succeed later.
_TRANSIENT_CLIENT_STATUSES = {408, 425, 429}


def download_source(
    url: str,
    dst: Path,
    *,
    timeout: Optional[float] = None,
    chunk_bytes: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    Stream url into dst:
    - chunked GET, never buffered whole
    - written to <dst>.part, renamed on success
    - DownloadError on network/HTTP failure or an empty body
    """
    dst = Path(dst)
    ensure_dir(dst.parent)
    timeout = settings.DOWNLOAD_TIMEOUT_SECONDS if timeout is None else timeout
    chunk_bytes = chunk_bytes or settings.DOWNLOAD_CHUNK_BYTES
    http = session or requests
    tmp = dst.with_suffix(dst.suffix + ".part")

    try:
        with http.get(url, stream=True, timeout=timeout) as r:
            r.raise_for_status()
            bytes_written = 0
            with open(tmp, "wb") as f:
                for chunk in r.iter_content(chunk_size=chunk_bytes):
                    if chunk:
                        f.write(chunk)
                        bytes_written += len(chunk)
    except requests.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        retryable = status is None or status >= 500 or status in _TRANSIENT_CLIENT_STATUSES
        raise DownloadError(f"download failed: HTTP {status} for {url}", retryable=retryable) from e
    except (requests.RequestException, OSError) as e:
        raise DownloadError(f"download failed: {trim_tail(str(e), 500)}") from e

    if bytes_written <= 0:
        tmp.unlink(missing_ok=True)
        raise DownloadError(f"downloaded file is empty: {url}", retryable=False)

    tmp.replace(dst)
    logger.info("downloaded %d bytes to %s", bytes_written, dst)
    return dst
