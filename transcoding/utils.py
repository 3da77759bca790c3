import logging
import mimetypes
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


@contextmanager
def job_workspace(base_dir, job_id):
    """
    Yield a fresh scratch directory {base_dir}/job-{job_id}-<random>/ and remove it on exit.
    Every call gets a new path, so a retry never sees a previous attempt's files.
    """
    Path(base_dir).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"job-{job_id}-", dir=str(base_dir)))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("workspace not fully removed: %s", path)


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def trim_tail(s: str, limit: int = 2000) -> str:
    if not s:
        return ""
    return s[-limit:] if len(s) > limit else s


def source_filename(url: str) -> str:
    """Local name for the downloaded source: 'source' plus the URL's video extension, else .mp4."""
    suffix = Path(urlparse(url).path).suffix.lower()
    mime, _ = mimetypes.guess_type(f"x{suffix}") if suffix else (None, None)
    if mime and mime.startswith("video/"):
        return f"source{suffix}"
    return "source.mp4"
