"""
Video fetch client: yt-dlp for pages, aiohttp for direct media links.
"""

import asyncio
import logging
import os
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from config import DOWNLOAD_TIMEOUT_SECONDS, YTDL_BASE_OPTS, YTDLP_COOKIES_FILE
from errors import DownloadCancelledError
from models import CancellationToken
from utils import download_file_async, is_direct_file_url, sanitize_filename

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Optional[float], Optional[float]], None]


class VideoFetchClient:
    """
    Downloads (and merges to mp4) one video into a target directory.

    Progress callbacks are always invoked on the event loop thread, even
    though yt-dlp itself runs in the default executor.
    """

    def __init__(
        self,
        base_options: Optional[Dict[str, Any]] = None,
        timeout: int = DOWNLOAD_TIMEOUT_SECONDS,
        cookies_file: str = YTDLP_COOKIES_FILE,
    ):
        self.base_options = dict(base_options if base_options is not None else YTDL_BASE_OPTS)
        self.timeout = timeout
        self.cookies_file = cookies_file

    def _build_ytdlp_options(self, target_dir: str) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            **self.base_options,
            "paths": {"home": target_dir},
            "socket_timeout": min(self.timeout, 60),
        }
        if self.cookies_file:
            if os.path.exists(self.cookies_file):
                options["cookiefile"] = self.cookies_file
            else:
                logger.warning("YTDLP_COOKIES_FILE is set but file does not exist: %s", self.cookies_file)
        return options

    def _direct_target_path(self, url: str, target_dir: str) -> str:
        filename = sanitize_filename(os.path.basename(urlparse(url).path) or f"download_{int(time.time())}")
        if "." not in filename:
            filename += ".mp4"
        return os.path.join(target_dir, filename)

    async def predict_output_path(self, url: str, target_dir: str) -> str:
        """Dry run: resolve metadata and return the path the download will be written to."""
        if is_direct_file_url(url):
            return self._direct_target_path(url, target_dir)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._predict_with_ytdlp, url, target_dir)

    def _predict_with_ytdlp(self, url: str, target_dir: str) -> str:
        from yt_dlp import YoutubeDL

        with YoutubeDL(self._build_ytdlp_options(target_dir)) as ydl:
            info = ydl.extract_info(url, download=False)
            if info is None:
                raise ValueError(f"No metadata returned for {url}")
            if info.get("entries"):
                info = next((entry for entry in info["entries"] if entry), None)
                if info is None:
                    raise ValueError(f"Playlist has no downloadable entries: {url}")
            path = ydl.prepare_filename(info)
        merge_ext = self.base_options.get("merge_output_format")
        if merge_ext and info.get("requested_formats"):
            path = os.path.splitext(path)[0] + "." + merge_ext
        return path

    async def fetch(
        self,
        url: str,
        target_dir: str,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[str]:
        """
        Download `url` into `target_dir` and return the final file path.

        Raises DownloadCancelledError when the token fires mid-transfer. A
        token fired during post-processing may still let this return
        normally; callers must check the token afterwards.
        """
        if is_direct_file_url(url):
            filepath = self._direct_target_path(url, target_dir)
            async with aiohttp.ClientSession() as session:
                await download_file_async(
                    url=url,
                    filepath=filepath,
                    session=session,
                    timeout=self.timeout,
                    progress=progress,
                    token=token,
                )
            return filepath

        loop = asyncio.get_running_loop()

        def hook(data: Dict[str, Any]) -> None:
            if token is not None and token.cancelled:
                raise DownloadCancelledError("Download cancelled")
            if progress is None or data.get("status") != "downloading":
                return
            downloaded = float(data.get("downloaded_bytes") or 0.0)
            total = data.get("total_bytes") or data.get("total_bytes_estimate")
            percent = downloaded * 100.0 / float(total) if total else None
            loop.call_soon_threadsafe(progress, percent, data.get("eta"))

        return await loop.run_in_executor(None, self._download_with_ytdlp, url, target_dir, hook, token)

    def _download_with_ytdlp(
        self,
        url: str,
        target_dir: str,
        hook: Callable[[Dict[str, Any]], None],
        token: Optional[CancellationToken],
    ) -> Optional[str]:
        """Blocking yt-dlp execution function used in thread pool."""
        from yt_dlp import YoutubeDL
        from yt_dlp.utils import DownloadCancelled

        options = self._build_ytdlp_options(target_dir)
        options["progress_hooks"] = [hook]

        try:
            with YoutubeDL(options) as ydl:
                info = ydl.extract_info(url, download=True)
        except DownloadCancelled as error:
            raise DownloadCancelledError("Download cancelled") from error
        except Exception:
            if token is not None and token.cancelled:
                raise DownloadCancelledError("Download cancelled")
            raise

        if not info:
            return None
        if info.get("entries"):
            info = next((entry for entry in info["entries"] if entry), info)
        downloads = info.get("requested_downloads") or []
        if downloads and downloads[0].get("filepath"):
            return downloads[0]["filepath"]
        return info.get("filepath") or info.get("_filename")
