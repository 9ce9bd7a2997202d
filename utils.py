"""
Utilities for URL parsing, validation, text shaping and file operations.
"""

import inspect
import os
import re
import shutil
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import aiofiles
import aiohttp

from config import (
    DIRECT_FILE_RE,
    DISCORD_MESSAGE_LIMIT,
    MEDIA_EXTENSIONS,
    PLAYER_TITLE_DECORATIONS,
    SUBFOLDER_MAX_LENGTH,
    URL_RE,
)
from models import CancellationToken

ProgressCallback = Callable[[Optional[float], Optional[float]], None]


def find_first_url(text: str) -> Optional[str]:
    """Return first URL in text."""
    if not text:
        return None
    match = URL_RE.search(text)
    return match.group(0) if match else None


def strip_tracking_params(url: str) -> str:
    """Remove common tracking query params from URL."""
    try:
        parsed = urlparse(url)
        query_params = parse_qs(parsed.query)
        clean_params = {
            key: value
            for key, value in query_params.items()
            if key.lower()
            not in {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid", "si"}
        }
        clean_query = urlencode(clean_params, doseq=True)
        return urlunparse(
            (parsed.scheme, parsed.netloc, parsed.path, parsed.params, clean_query, parsed.fragment)
        )
    except ValueError:
        return url


def is_direct_file_url(url: str) -> bool:
    """True when URL points straight at a media file rather than a page."""
    if not url:
        return False
    return bool(DIRECT_FILE_RE.search(urlparse(url).path or ""))


def source_identifier(url: str) -> str:
    """Best-effort stable id for a source URL (video id or last path segment)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "media"
    video_ids = parse_qs(parsed.query).get("v")
    if video_ids and video_ids[0]:
        return video_ids[0]
    segments = [segment for segment in parsed.path.split("/") if segment]
    if segments:
        return os.path.splitext(segments[-1])[0] or segments[-1]
    return parsed.netloc or "media"


def sanitize_filename(filename: str) -> str:
    """Return filesystem-safe filename."""
    safe_name = re.sub(r'[<>:"/\\|?*]', "_", filename)
    safe_name = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", safe_name)
    safe_name = safe_name.strip().strip(".")
    return (safe_name or "media")[:255]


def sanitize_folder_name(name: str, max_length: int = SUBFOLDER_MAX_LENGTH) -> str:
    """
    Reduce a user-supplied folder name to a single safe path component.

    Traversal sequences and separators are removed, disallowed characters are
    replaced with underscores and the result is length-capped. May return an
    empty string when nothing usable is left.
    """
    if not name:
        return ""
    cleaned = name.replace("..", "")
    cleaned = re.sub(r"[\\/]+", "", cleaned)
    cleaned = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", cleaned)
    cleaned = re.sub(r'[<>:"|?*]', "_", cleaned)
    cleaned = cleaned.strip().strip(".").strip()
    return cleaned[:max_length].rstrip(" .")


def resolve_target_dir(root: str, subfolder: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    Pick the directory a download should land in.

    Returns the directory and an optional notice for the requester. Invalid
    or missing subfolders fall back to the root; this never rejects a job.
    """
    if not subfolder:
        return root, None

    safe = sanitize_folder_name(subfolder)
    if not safe:
        return root, f"Folder name `{subfolder}` is not valid, saving to the main download folder."

    candidate = os.path.join(root, safe)
    root_real = os.path.realpath(root)
    candidate_real = os.path.realpath(candidate)
    if os.path.commonpath([root_real, candidate_real]) != root_real:
        return root, f"Folder `{subfolder}` is outside the download folder, saving to the main folder."
    if not os.path.isdir(candidate):
        return root, f"Folder `{safe}` does not exist, saving to the main download folder."
    if safe != subfolder:
        return candidate, f"Folder name cleaned up to `{safe}`."
    return candidate, None


def cleanup_artifacts(path: Optional[str], keep_final: bool = False) -> List[str]:
    """
    Delete a (possibly partial) download and the temp files yt-dlp leaves
    beside it. Returns the paths removed.

    With keep_final the file at `path` itself is left alone and only the
    temp siblings go.
    """
    if not path:
        return []

    target = Path(path)
    directory = target.parent
    if not directory.is_dir():
        return []

    stem = target.stem
    candidates = {
        target.with_name(target.name + ".part"),
        target.with_name(target.name + ".ytdl"),
        target.with_name(target.name + ".temp"),
    }
    format_piece = re.compile(re.escape(stem) + r"\.f\d+\.[A-Za-z0-9]+(?:\.part)?$")
    for entry in directory.iterdir():
        if format_piece.match(entry.name):
            candidates.add(entry)
        elif entry.name.startswith(stem + ".") and entry.suffix in (".part", ".ytdl", ".temp"):
            candidates.add(entry)

    if not keep_final:
        candidates.add(target)

    removed: List[str] = []
    for candidate in candidates:
        try:
            if candidate.is_file():
                candidate.unlink()
                removed.append(str(candidate))
        except OSError:
            continue
    return removed


def has_enough_disk_space(path: str, required_mb: int = 500) -> bool:
    """Check available disk space."""
    try:
        _, _, free = shutil.disk_usage(path)
        return (free // (1024 * 1024)) >= required_mb
    except OSError:
        return True


def format_file_size(bytes_size: int) -> str:
    """Human readable file size."""
    if bytes_size is None:
        return "0.0 B"

    size = float(max(bytes_size, 0))
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024.0 or unit == "TB":
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return "0.0 B"


def format_duration(seconds: float) -> str:
    """Human readable duration."""
    total_seconds = max(0, int(seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def clean_player_title(
    raw_title: Optional[str],
    decorations: Iterable[str] = PLAYER_TITLE_DECORATIONS,
) -> Optional[str]:
    """Strip player window decorations and a trailing file extension."""
    if not raw_title:
        return None
    title = raw_title.strip()
    if title.upper() == "N/A":
        return None
    for decoration in decorations:
        if title.endswith(decoration):
            title = title[: -len(decoration)].strip()
    title = re.sub(r"\.[A-Za-z0-9]{2,4}$", "", title).strip()
    return title or None


def strip_markdown(text: str) -> str:
    return re.sub(r"\*+", "", text or "").strip()


def truncate(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text[:limit]


def split_message(
    content: str,
    prefix: str = "",
    suffix: str = "",
    limit: int = DISCORD_MESSAGE_LIMIT,
) -> List[str]:
    """Split a long reply on line boundaries so each chunk fits one message."""
    if not content:
        return []
    if len(prefix) + len(content) + len(suffix) <= limit:
        return [prefix + content + suffix]

    max_chunk = limit - len(prefix) - len(suffix) - 10
    chunks: List[str] = []
    current = ""
    for line in content.split("\n"):
        while len(line) > max_chunk:
            if current:
                chunks.append(prefix + current + suffix)
                current = ""
            chunks.append(prefix + line[:max_chunk] + suffix)
            line = line[max_chunk:]
        if len(current) + len(line) + 1 <= max_chunk:
            current += line + "\n"
        else:
            if current:
                chunks.append(prefix + current + suffix)
            current = line + "\n"
    if current:
        chunks.append(prefix + current + suffix)
    return chunks


def list_media_files(directory: str, page: int = 1, page_size: int = 10) -> Tuple[List[str], int]:
    """Return one page of media file paths (sorted by name) and the page count."""
    if not directory or not os.path.isdir(directory):
        return [], 0
    files = sorted(
        (
            str(entry)
            for entry in Path(directory).iterdir()
            if entry.is_file() and entry.suffix.lower() in MEDIA_EXTENSIONS
        ),
        key=lambda item: os.path.basename(item).lower(),
    )
    if not files:
        return [], 0
    pages = (len(files) + page_size - 1) // page_size
    page = min(max(page, 1), pages)
    start = (page - 1) * page_size
    return files[start:start + page_size], pages


async def download_file_async(
    url: str,
    filepath: str,
    session: aiohttp.ClientSession,
    timeout: int = 300,
    progress: Optional[ProgressCallback] = None,
    token: Optional[CancellationToken] = None,
) -> None:
    """Download direct file URL to local path, honouring the cancellation token per chunk."""
    async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
        response.raise_for_status()
        total = response.content_length
        received = 0
        async with aiofiles.open(filepath, "wb") as file:
            async for chunk in response.content.iter_chunked(65536):
                if token is not None:
                    token.raise_if_cancelled()
                await file.write(chunk)
                received += len(chunk)
                if progress and total:
                    progress(received * 100.0 / total, None)


def validate_url_input(url: str) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url:
        return False, "URL cannot be empty"
    if len(url) > 2000:
        return False, "URL is too long"

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Only HTTP/HTTPS URLs are supported"
        if not parsed.netloc:
            return False, "Malformed URL"
    except ValueError:
        return False, "Malformed URL"

    return True, ""


def sanitize_user_input(text: str, max_length: int = 1000) -> str:
    """Remove control chars and trim length."""
    if not text:
        return ""
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", text)
    return sanitized.strip()[:max_length]


async def maybe_await(result: object) -> None:
    """Await callback results that are awaitable; plain callbacks return None."""
    if inspect.isawaitable(result):
        await result
