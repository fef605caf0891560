"""FastAPI backend for TUBE-TOK.

This service exposes two endpoints and one page:
- GET /api/collect-videos : searches YouTube and returns matching videos
- GET /api/download-video : streams the first 30 seconds of a video as MP4
- GET /                   : renders the collected videos as a thumbnail grid

Run with:
    uvicorn tubetok:app --host 0.0.0.0 --port 8000
"""
from __future__ import annotations

import json
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
import threading
import weakref
from collections import deque
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
import yt_dlp
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

load_dotenv()

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("tubetok")


def configure_logging(level: str = "INFO") -> None:
    """Send application logs to stdout with a consistent format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stdout,
    )


configure_logging(os.getenv("LOG_LEVEL", "INFO"))

BASE_DIR = Path(__file__).resolve().parent

YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY")
DEFAULT_SEARCH_QUERY = os.getenv("VIDEO_SEARCH_QUERY") or "talk about money"
DEFAULT_MAX_RESULTS = min(max(int(os.getenv("VIDEO_SEARCH_MAX_RESULTS", "10") or "10"), 1), 50)
SEARCH_FIELDS = "items(id/videoId,snippet/title,snippet/thumbnails/medium)"

APP_URL = os.getenv("APP_URL") or "http://localhost:8000"
LISTING_FETCH_TIMEOUT = 20

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY") or "ffmpeg"
YT_DLP_BINARY = os.getenv("YT_DLP_BINARY") or "yt-dlp"

CHUNK_SIZE = 1024 * 256
MAX_CONCURRENT = max(int(os.getenv("MAX_CONCURRENT_DOWNLOADS", "3") or "3"), 1)
DOWNLOAD_GUARD = threading.BoundedSemaphore(value=MAX_CONCURRENT)
STDERR_TAIL_LINES = 20

CLIP_SECONDS = 30
VIDEO_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{11}")
# Progressive MP4 only: the transcoder reads a single muxed stream from stdin.
PROGRESSIVE_MP4_FORMAT = "best[ext=mp4][vcodec!=none][acodec!=none]"

DEFAULT_HTTP_HEADERS = {"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0 Safari/537.36"}

if shutil.which(FFMPEG_BINARY) is None:
    logger.warning(
        "ffmpeg binary %r not found. Install ffmpeg or set FFMPEG_BINARY for /api/download-video to work.",
        FFMPEG_BINARY,
    )

app = FastAPI(title="TUBE-TOK API", version="1.0.0")

# Allow the frontend to connect from any origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


class VideoThumbnail(BaseModel):
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


class VideoThumbnails(BaseModel):
    medium: Optional[VideoThumbnail] = None


class VideoSnippet(BaseModel):
    title: Optional[str] = None
    thumbnails: Optional[VideoThumbnails] = None


class VideoId(BaseModel):
    videoId: Optional[str] = None


class YouTubeVideoItem(BaseModel):
    id: Optional[VideoId] = None
    snippet: Optional[VideoSnippet] = None


class DownloadVideoError(Exception):
    """A download request that failed before any media was sent."""

    def __init__(self, status_code: int, message: str, video_id: Optional[str]) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.video_id = video_id


class TranscodeError(RuntimeError):
    pass


@app.exception_handler(DownloadVideoError)
async def download_video_error_handler(_request: Request, exc: DownloadVideoError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "videoId": exc.video_id},
    )


# ---------------------------
# Video search
# ---------------------------

def youtube_error_message(exc: Exception) -> str:
    """Prefer the API's own error message over the client's generic one."""
    if isinstance(exc, HttpError):
        try:
            body = json.loads(exc.content.decode("utf-8", errors="replace"))
        except (ValueError, AttributeError):
            body = None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            message = body["error"].get("message")
            if message:
                return str(message)
    return str(exc) or "Failed to fetch videos from YouTube."


def search_videos(api_key: str, query: str, max_results: int) -> List[Dict[str, Any]]:
    youtube = build("youtube", "v3", developerKey=api_key, cache_discovery=False)
    response = youtube.search().list(
        part="snippet",
        q=query,
        type="video",
        maxResults=max_results,
        fields=SEARCH_FIELDS,
    ).execute()
    return response.get("items") or []


@app.get(
    "/api/collect-videos",
    response_model=List[YouTubeVideoItem],
    response_model_exclude_none=True,
)
def collect_videos(
    q: str = Query(DEFAULT_SEARCH_QUERY, min_length=1, description="Search query"),
    max_results: int = Query(DEFAULT_MAX_RESULTS, alias="maxResults", ge=1, le=50),
):
    """Return YouTube search results projected to id, title and medium thumbnail."""
    api_key = YOUTUBE_API_KEY
    if not api_key:
        logger.warning("YouTube API Key not found in /api/collect-videos.")
        return JSONResponse(
            status_code=500,
            content={"message": "YouTube API Key is not configured on the server."},
        )

    try:
        items = search_videos(api_key, q, max_results)
    except Exception as exc:
        logger.error("Error fetching YouTube videos in API route: %s", exc)
        return JSONResponse(
            status_code=500,
            content={
                "message": "Error fetching videos from YouTube API.",
                "error": youtube_error_message(exc),
            },
        )

    logger.info("Collected %d videos for query %r", len(items), q)
    return [YouTubeVideoItem.model_validate(item) for item in items if isinstance(item, dict)]


# ---------------------------
# Clip download
# ---------------------------

def is_valid_video_id(video_id: str) -> bool:
    return VIDEO_ID_PATTERN.fullmatch(video_id) is not None


def sanitize_filename_base(title: str) -> str:
    """Reduce a video title to an ASCII-safe filename stem of at most 100 chars.

    Characters outside the BMP count as two UTF-16 units and become two underscores.
    """
    stem = re.sub(
        r"[^A-Za-z0-9_\s\-.]",
        lambda match: "__" if ord(match.group()) > 0xFFFF else "_",
        title,
    )
    stem = re.sub(r"\s+", "_", stem)
    return stem[:100]


def clip_filename(title: Optional[str]) -> str:
    return f"{sanitize_filename_base(title or 'youtube_video')}_trimmed_{CLIP_SECONDS}s.mp4"


def classify_download_error(message: str, video_id: str) -> DownloadVideoError:
    """Map a yt-dlp failure message onto the HTTP status the client should see."""
    lowered = message.lower()
    if "unavailable" in lowered or "private" in lowered or "video not found" in lowered:
        return DownloadVideoError(404, "Video is unavailable, private, or not found.", video_id)
    if "extract function" in lowered or "cipher" in lowered or "signature" in lowered:
        return DownloadVideoError(
            503,
            f"Error processing YouTube video: {message}. This often indicates an issue with YouTube's "
            "current video delivery mechanism or that yt-dlp needs an update to adapt to recent "
            "YouTube changes.",
            video_id,
        )
    if (
        "no formats found matching quality" in lowered
        or "no such format found" in lowered
        or "requested format is not available" in lowered
    ):
        return DownloadVideoError(
            422,
            f"Could not find a suitable MP4 format with both video and audio for videoId {video_id}. "
            f"The video might only offer separate streams. Error: {message}",
            video_id,
        )
    if "sign in to confirm" in lowered or "confirm you're not a bot" in lowered or "confirm you’re not a bot" in lowered:
        return DownloadVideoError(
            403,
            "YouTube requires verification to access this video. This may be due to bot detection. "
            f"Please try again later or from a different network. Original error: {message}",
            video_id,
        )
    return DownloadVideoError(500, message or "Failed to download video.", video_id)


def resolve_video(video_url: str) -> Dict[str, Any]:
    """Fetch metadata and pick the progressive MP4 format without downloading."""
    options = {
        "format": PROGRESSIVE_MP4_FORMAT,
        "noplaylist": True,
        "skip_download": True,
        "quiet": True,
        "no_warnings": True,
        "http_headers": DEFAULT_HTTP_HEADERS,
    }
    with yt_dlp.YoutubeDL(options) as ydl:
        return ydl.extract_info(video_url, download=False)


def build_source_command(video_url: str, format_id: str) -> List[str]:
    return [
        YT_DLP_BINARY,
        "-f",
        format_id,
        "-o",
        "-",
        "--no-playlist",
        "--no-warnings",
        "--quiet",
        video_url,
    ]


def build_transcode_command() -> List[str]:
    return [
        FFMPEG_BINARY,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        "pipe:0",
        "-ss",
        "00:00:00",
        "-t",
        str(CLIP_SECONDS),
        "-f",
        "mp4",
        "-movflags",
        "frag_keyframe+empty_moov",  # fragmented MP4 can be written to a pipe
        "-preset",
        "ultrafast",
        "-tune",
        "zerolatency",
        "pipe:1",
    ]


def start_clip_processes(video_id: str, video_url: str, format_id: str) -> List[subprocess.Popen]:
    """Spawn yt-dlp and ffmpeg with the download piped straight into the transcoder."""
    try:
        source = subprocess.Popen(
            build_source_command(video_url, format_id),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
    except FileNotFoundError as exc:
        raise DownloadVideoError(500, "yt-dlp is not installed or not in PATH", video_id) from exc

    transcode_cmd = build_transcode_command()
    try:
        transcoder = subprocess.Popen(
            transcode_cmd,
            stdin=source.stdout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
    except FileNotFoundError as exc:
        terminate_processes([source])
        raise DownloadVideoError(500, "ffmpeg is required to trim and transcode videos", video_id) from exc

    # Only ffmpeg reads the download; closing our copy lets yt-dlp see a broken pipe when ffmpeg exits.
    if source.stdout:
        source.stdout.close()

    logger.info("FFmpeg process started for videoId %s: %s", video_id, shlex.join(transcode_cmd))
    return [source, transcoder]


def terminate_processes(processes: List[subprocess.Popen]) -> None:
    for proc in processes:
        if proc.poll() is None:
            proc.kill()
        for pipe in (proc.stdout, proc.stderr):
            try:
                if pipe:
                    pipe.close()
            except OSError:
                pass


def drain_stderr(proc: subprocess.Popen, sink: deque) -> None:
    """Keep the tail of a process's stderr; an undrained pipe would block it."""
    try:
        if proc.stderr:
            for line in iter(proc.stderr.readline, b""):
                text = line.decode("utf-8", "ignore").strip()
                if text:
                    sink.append(text)
    except (OSError, ValueError):
        # Pipe closed during teardown.
        pass


def source_failure_lines(tail: deque) -> List[str]:
    """yt-dlp ERROR lines, ignoring the broken pipe it reports once ffmpeg has its 30 seconds."""
    return [
        line
        for line in tail
        if line.startswith("ERROR:") and "broken pipe" not in line.lower() and "errno 32" not in line.lower()
    ]


class PipelineCleanup:
    """Kills a clip pipeline and releases its download slot, at most once."""

    def __init__(self, processes: List[subprocess.Popen], release: Callable[[], None]) -> None:
        self.processes = processes
        self._release = release
        self._lock = threading.Lock()
        self._done = False

    def __call__(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        try:
            terminate_processes(self.processes)
        finally:
            self._release()


class ClipStreamingResponse(StreamingResponse):
    """Streaming response that tears its pipeline down even if the body is never iterated."""

    def __init__(self, content, cleanup: PipelineCleanup, **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self.cleanup = cleanup
        # Covers a response that is built but never sent.
        weakref.finalize(self, cleanup)

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self.cleanup()


async def relay_clip(
    video_id: str,
    processes: List[subprocess.Popen],
    on_close: Callable[[], None],
):
    """Yield transcoder output; always tear the pipeline down when iteration stops."""
    source, transcoder = processes
    tails = [deque(maxlen=STDERR_TAIL_LINES) for _ in processes]
    source_tail, transcoder_tail = tails
    drains = [
        threading.Thread(target=drain_stderr, args=(proc, tail), daemon=True)
        for proc, tail in zip(processes, tails)
    ]
    for thread in drains:
        thread.start()

    finished = False
    sent = 0
    try:
        if transcoder.stdout is None:
            raise TranscodeError("Stream unavailable from ffmpeg")

        while True:
            chunk = await run_in_threadpool(transcoder.stdout.read, CHUNK_SIZE)
            if not chunk:
                break
            if not sent:
                logger.info("FFmpeg produced its first chunk for videoId %s, size: %d", video_id, len(chunk))
            sent += len(chunk)
            yield chunk

        try:
            returncode = await run_in_threadpool(transcoder.wait, 5)
        except subprocess.TimeoutExpired as exc:
            raise TranscodeError(f"FFmpeg did not exit for videoId {video_id}") from exc

        if returncode != 0:
            for thread in drains:
                thread.join(timeout=1)
            detail = "\n".join(list(transcoder_tail)[-6:]).strip() or f"ffmpeg exited with code {returncode}"
            source_detail = "\n".join(list(source_tail)[-3:]).strip()
            if source_detail:
                logger.error("yt-dlp stderr for videoId %s: %s", video_id, source_detail)
            logger.error("FFmpeg error during processing for videoId %s: %s", video_id, detail)
            raise TranscodeError(f"FFmpeg processing failed: {detail}")

        # ffmpeg exits 0 on a truncated input too.
        try:
            source_returncode = await run_in_threadpool(source.wait, 2)
        except subprocess.TimeoutExpired:
            source_returncode = None
        if source_returncode not in (0, None):
            for thread in drains:
                thread.join(timeout=1)
            source_errors = source_failure_lines(source_tail)
            if source_errors:
                detail = "\n".join(source_errors[-3:])
                logger.error("yt-dlp failed mid-download for videoId %s: %s", video_id, detail)
                raise TranscodeError(f"yt-dlp stream error: {detail}")

        finished = True
        logger.info("FFmpeg process finished successfully for videoId %s (%d bytes).", video_id, sent)
    finally:
        if not finished:
            logger.info("Stream for videoId %s stopped early. Killing yt-dlp and FFmpeg.", video_id)
        terminate_processes(processes)
        on_close()


@app.get("/api/download-video")
def download_video(
    video_id: Optional[str] = Query(None, alias="videoId", description="YouTube video ID"),
):
    """
    Stream the first 30 seconds of a video, transcoded to fragmented MP4.

    - yt-dlp resolves the video and writes the chosen progressive MP4 to stdout
    - ffmpeg reads that from stdin, trims and transcodes, and writes to stdout
    - The response relays ffmpeg's stdout; a client disconnect kills both processes
    """
    if not video_id:
        raise DownloadVideoError(400, "videoId query parameter is required", None)
    if not is_valid_video_id(video_id):
        raise DownloadVideoError(400, "Invalid YouTube video ID", video_id)

    acquired = DOWNLOAD_GUARD.acquire(timeout=2)
    if not acquired:
        raise HTTPException(status_code=429, detail="Too many concurrent downloads, please wait.")

    handed_off = False
    try:
        video_url = f"https://www.youtube.com/watch?v={video_id}"
        try:
            info = resolve_video(video_url)
        except yt_dlp.utils.DownloadError as exc:
            logger.error("Error downloading video for videoId %s: %s", video_id, exc)
            raise classify_download_error(str(exc), video_id) from exc

        format_id = info.get("format_id")
        if not format_id:
            raise DownloadVideoError(
                422,
                f"Could not find a suitable MP4 format with both video and audio for videoId {video_id}.",
                video_id,
            )

        logger.info("Resolved videoId %s to format %s (%r)", video_id, format_id, info.get("title"))
        filename = clip_filename(info.get("title"))
        processes = start_clip_processes(video_id, video_url, format_id)

        cleanup = PipelineCleanup(processes, DOWNLOAD_GUARD.release)
        headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
        response = ClipStreamingResponse(
            relay_clip(video_id, processes, on_close=cleanup),
            cleanup,
            media_type="video/mp4",
            headers=headers,
        )
        handed_off = True
        return response
    except (DownloadVideoError, HTTPException):
        raise
    except Exception as exc:
        logger.exception("Unexpected error preparing videoId %s", video_id)
        raise DownloadVideoError(500, f"An unexpected error occurred: {exc}", video_id) from exc
    finally:
        if not handed_off:
            DOWNLOAD_GUARD.release()


# ---------------------------
# Page and health
# ---------------------------

def fetch_collected_videos() -> tuple[List[Dict[str, Any]], Optional[str]]:
    """Call our own listing endpoint; returns (videos, error message)."""
    url = f"{APP_URL.rstrip('/')}/api/collect-videos"
    try:
        response = requests.get(url, timeout=LISTING_FETCH_TIMEOUT, headers={"Cache-Control": "no-store"})
        if not response.ok:
            message = f"API request failed with status {response.status_code}"
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                message = data.get("message") or data.get("error") or message
            return [], message
        videos = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Error fetching videos from /api/collect-videos: %s", exc)
        return [], str(exc) or "An unknown error occurred while fetching videos."

    if not isinstance(videos, list):
        return [], "Unexpected response from /api/collect-videos."
    logger.info("Fetched Videos from API: %d", len(videos))
    return videos, None


def build_video_cards(videos: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    cards = []
    for raw in videos:
        try:
            video = YouTubeVideoItem.model_validate(raw)
        except ValueError:
            continue
        video_id = video.id.videoId if video.id else None
        title = video.snippet.title if video.snippet else None
        medium = video.snippet.thumbnails.medium if video.snippet and video.snippet.thumbnails else None
        if not video_id or not title or not medium or not medium.url:
            continue
        cards.append(
            {
                "video_id": video_id,
                "title": title,
                "watch_url": f"https://www.youtube.com/watch?v={video_id}",
                "download_url": f"/api/download-video?videoId={video_id}",
                "thumbnail_url": medium.url,
                "thumbnail_width": medium.width or 320,
                "thumbnail_height": medium.height or 180,
            }
        )
    return cards


@app.get("/", response_class=HTMLResponse)
def home(request: Request) -> HTMLResponse:
    videos, fetch_error = fetch_collected_videos()
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "videos": build_video_cards(videos) if not fetch_error else [],
            # Incomplete items are skipped, but the section still shows when the API returned any.
            "video_count": len(videos),
            "fetch_error": fetch_error,
            "clip_seconds": CLIP_SECONDS,
        },
    )


@app.get("/api/health")
async def healthcheck() -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    ffmpeg_version = None
    try:
        proc = subprocess.run([FFMPEG_BINARY, "-version"], capture_output=True, text=True, timeout=2)
        if proc.returncode == 0:
            ffmpeg_version = proc.stdout.splitlines()[0]
    except FileNotFoundError:
        ffmpeg_version = None
    except (OSError, subprocess.SubprocessError):
        ffmpeg_version = "ffmpeg check failed"

    yt_dlp_version = getattr(yt_dlp.version, "__version__", None)
    return {
        "status": "ok",
        "yt_dlp": yt_dlp_version,
        "ffmpeg": ffmpeg_version or "missing",
        "max_concurrent_downloads": MAX_CONCURRENT,
        "clip_seconds": CLIP_SECONDS,
        "youtube_api_key_configured": bool(YOUTUBE_API_KEY),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tubetok:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )
