"""FastAPI backend that lists and muxes split YouTube streams.

This service exposes two endpoints:
- POST /formats  : returns the video-only and audio-only formats for a URL
- POST /download : downloads one video-only and one audio-only format in
                   parallel and muxes them into ``<video id>.mp4`` with ffmpeg

Run with:
    uvicorn server:app --host 0.0.0.0 --port 3003
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import subprocess
import sys
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import yt_dlp
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from yt_dlp.extractor.youtube import YoutubeIE
from yt_dlp.version import __version__ as yt_dlp_version

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("server")

OUTPUT_DIR = os.getenv("OUTPUT_DIR") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "videos")
FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3003") or "3003")

UNKNOWN = "unknown"

INVALID_URL_MESSAGE = "URL inválida."
NO_FORMATS_MESSAGE = "No se pudieron encontrar formatos adecuados de video y audio."
DOWNLOAD_OK_MESSAGE = "Video descargado y procesado exitosamente."


class ServiceError(Exception):
    """Base class for failures surfaced to HTTP clients."""


class InvalidUrl(ServiceError):
    pass


class ExtractionFailure(ServiceError):
    pass


class NoSuitableFormat(ServiceError):
    pass


class DownloadFailed(ServiceError):
    pass


class MuxFailed(ServiceError):
    pass


def ensure_output_dir() -> str:
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    return OUTPUT_DIR


ensure_output_dir()
logger.info("Writing downloads to %s", OUTPUT_DIR)

app = FastAPI(title="Stream Mux API", version="1.0.0")

# Allow the frontend to connect from any origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class FormatsRequest(BaseModel):
    # Any JSON value; non-strings are answered as an invalid URL
    url: Optional[Any] = None


class DownloadRequest(BaseModel):
    url: Optional[Any] = None
    videoItag: Optional[Union[int, str]] = None
    audioItag: Optional[Union[int, str]] = None


def is_valid_url(url: Any) -> bool:
    """Return True for an http(s) URL that carries a YouTube video id.

    Watch URLs with a ``list=`` parameter are accepted; only the video is used.
    """
    if not url or not isinstance(url, str):
        return False
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    return bool(YoutubeIE.get_temp_id(url))


def video_id_from_url(url: str) -> str:
    video_id = YoutubeIE.get_temp_id(url.strip()) if is_valid_url(url) else None
    if not video_id:
        raise InvalidUrl(INVALID_URL_MESSAGE)
    return video_id


def extract_video_info(url: str) -> Dict[str, Any]:
    """Resolve the full metadata, including every format, for a single video."""
    options = {"quiet": True, "no_warnings": True, "skip_download": True, "noplaylist": True}
    try:
        with yt_dlp.YoutubeDL(options) as ydl:
            info = ydl.extract_info(url, download=False)
    except Exception as exc:
        raise ExtractionFailure(str(exc)) from exc
    if not info:
        raise ExtractionFailure("no metadata returned")
    return info


def has_video(fmt: Dict[str, Any]) -> bool:
    return fmt.get("vcodec") not in (None, "none")


def has_audio(fmt: Dict[str, Any]) -> bool:
    return fmt.get("acodec") not in (None, "none")


def quality_label(fmt: Dict[str, Any]) -> str:
    label = fmt.get("format_note")
    if label:
        return str(label)
    if fmt.get("height"):
        return f"{fmt['height']}p"
    return UNKNOWN


def quality_number(label: Optional[str]) -> int:
    """Leading integer of a quality label ("1080p60" -> 1080), 0 otherwise."""
    match = re.match(r"\s*(\d+)", label or "")
    return int(match.group(1)) if match else 0


def video_bitrate(fmt: Dict[str, Any]) -> int:
    # yt-dlp reports kbit/s
    kbps = fmt.get("tbr") or fmt.get("vbr") or 0
    return int(round(kbps * 1000))


def audio_bitrate(fmt: Dict[str, Any]) -> int:
    kbps = fmt.get("abr") or fmt.get("tbr") or 0
    return int(round(kbps))


def mime_type(fmt: Dict[str, Any], kind: str, codec: Optional[str]) -> str:
    ext = fmt.get("ext")
    if not ext:
        return UNKNOWN
    if codec:
        return f'{kind}/{ext}; codecs="{codec}"'
    return f"{kind}/{ext}"


def sort_video_formats(formats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    candidates = [fmt for fmt in formats if has_video(fmt) and not has_audio(fmt)]
    return sorted(
        candidates,
        key=lambda fmt: (quality_number(quality_label(fmt)), video_bitrate(fmt)),
        reverse=True,
    )


def sort_audio_formats(formats: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    candidates = [fmt for fmt in formats if has_audio(fmt) and not has_video(fmt)]
    return sorted(candidates, key=audio_bitrate, reverse=True)


def describe_video_format(fmt: Dict[str, Any]) -> Dict[str, Any]:
    codec = fmt.get("vcodec")
    return {
        "itag": fmt.get("format_id") or UNKNOWN,
        "container": fmt.get("ext") or UNKNOWN,
        "qualityLabel": quality_label(fmt),
        "codecs": codec or UNKNOWN,
        "mimeType": mime_type(fmt, "video", codec),
        "bitrate": video_bitrate(fmt),
        "fps": fmt.get("fps") or 0,
        "videoCodec": codec or UNKNOWN,
        "resolution": f"{fmt.get('width') or UNKNOWN}x{fmt.get('height') or UNKNOWN}",
    }


def describe_audio_format(fmt: Dict[str, Any]) -> Dict[str, Any]:
    codec = fmt.get("acodec")
    return {
        "itag": fmt.get("format_id") or UNKNOWN,
        "container": fmt.get("ext") or UNKNOWN,
        "codecs": codec or UNKNOWN,
        "mimeType": mime_type(fmt, "audio", codec),
        "audioBitrate": audio_bitrate(fmt),
        "audioCodec": codec or UNKNOWN,
    }


def list_formats(info: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    formats = info.get("formats") or []
    return {
        "videoFormats": [describe_video_format(fmt) for fmt in sort_video_formats(formats)],
        "audioFormats": [describe_audio_format(fmt) for fmt in sort_audio_formats(formats)],
    }


def choose_format(formats: List[Dict[str, Any]], itag: Union[int, str]) -> Optional[Dict[str, Any]]:
    wanted = str(itag).strip()
    return next((fmt for fmt in formats if str(fmt.get("format_id")) == wanted), None)


def select_formats(
    info: Dict[str, Any],
    video_itag: Optional[Union[int, str]] = None,
    audio_itag: Optional[Union[int, str]] = None,
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Pick the requested formats, or the best video-only and audio-only ones."""
    formats = info.get("formats") or []

    if video_itag not in (None, ""):
        video_format = choose_format(formats, video_itag)
    else:
        video_format = next(iter(sort_video_formats(formats)), None)

    if audio_itag not in (None, ""):
        audio_format = choose_format(formats, audio_itag)
    else:
        audio_format = next(iter(sort_audio_formats(formats)), None)

    if not video_format or not audio_format:
        raise NoSuitableFormat(NO_FORMATS_MESSAGE)
    return video_format, audio_format


def download_format(info: Dict[str, Any], fmt: Dict[str, Any], output_path: str, kind: str) -> None:
    """Download exactly one format to ``output_path``, overwriting it.

    Reuses the already resolved ``info`` the way ``yt-dlp --load-info-json``
    does, so the page is not extracted again.
    """
    ydl_opts = {
        "format": str(fmt.get("format_id")),
        "outtmpl": output_path,
        "noplaylist": True,
        "overwrites": True,
        "quiet": True,
        "no_warnings": True,
        "noprogress": True,
    }
    start = time.monotonic()
    try:
        with yt_dlp.YoutubeDL(ydl_opts) as ydl:
            ydl.process_ie_result(ydl.sanitize_info(info), download=True)
    except Exception as exc:
        logger.error("Error downloading %s: %s", output_path, exc)
        raise DownloadFailed(str(exc)) from exc

    if not os.path.exists(output_path):
        logger.error("Error downloading %s: file was not created", output_path)
        raise DownloadFailed(f"{kind} file was not created")

    elapsed = time.monotonic() - start
    size_mb = os.path.getsize(output_path) / (1024 * 1024)
    logger.info("Downloaded %s: %s (%.2f s, %.2f MB)", kind, output_path, elapsed, size_mb)


async def fetch_file(info: Dict[str, Any], fmt: Dict[str, Any], output_path: str, kind: str) -> None:
    await asyncio.to_thread(download_format, info, fmt, output_path, kind)


async def run_ffmpeg(args: List[str]) -> Tuple[int, str]:
    """Run ffmpeg with ``args`` and return its exit code and stderr."""
    try:
        proc = await asyncio.create_subprocess_exec(
            FFMPEG_BINARY,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise MuxFailed(f"{FFMPEG_BINARY} is required to combine streams") from exc
    _, stderr = await proc.communicate()
    return proc.returncode, stderr.decode("utf-8", "ignore")


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


async def mux_streams(video_path: str, audio_path: str, output_path: str) -> None:
    """Copy both streams into ``output_path`` and delete the inputs on success.

    On failure the inputs stay on disk and only the partial output is removed.
    """
    base, ext = os.path.splitext(output_path)
    staged_path = f"{base}.{uuid.uuid4().hex}{ext}"
    args = [
        "-y",
        "-i",
        video_path,
        "-i",
        audio_path,
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-c",
        "copy",
        staged_path,
    ]
    returncode, stderr = await run_ffmpeg(args)
    if returncode != 0 or not os.path.exists(staged_path):
        _remove(staged_path)
        # Last few ffmpeg lines are enough to explain the failure
        detail = "\n".join(stderr.strip().splitlines()[-3:]) or f"ffmpeg exited with code {returncode}"
        raise MuxFailed(detail)

    os.replace(staged_path, output_path)
    logger.info("Combined video and audio into %s", output_path)
    _remove(video_path)
    _remove(audio_path)


def temp_paths(video_id: str, video_format: Dict[str, Any], audio_format: Dict[str, Any]) -> Tuple[str, str]:
    """Per-request temp paths so concurrent requests for one video never collide."""
    token = uuid.uuid4().hex[:12]
    video_path = os.path.join(OUTPUT_DIR, f"{video_id}_{token}_video.{video_format.get('ext') or 'mp4'}")
    audio_path = os.path.join(OUTPUT_DIR, f"{video_id}_{token}_audio.{audio_format.get('ext') or 'mp4'}")
    return video_path, audio_path


def ffmpeg_version() -> Optional[str]:
    try:
        proc = subprocess.run([FFMPEG_BINARY, "-version"], capture_output=True, text=True, timeout=2)
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0 or not proc.stdout:
        return None
    return proc.stdout.splitlines()[0]


@app.get("/")
async def root() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/health")
async def healthcheck() -> Dict[str, Any]:
    """Return service readiness and tool versions."""
    return {
        "status": "ok",
        "yt_dlp": yt_dlp_version,
        "ffmpeg": await asyncio.to_thread(ffmpeg_version) or "missing",
        "output_dir": OUTPUT_DIR,
    }


@app.post("/formats")
async def formats(body: FormatsRequest) -> Dict[str, Any]:
    """Return the video-only and audio-only formats, best first."""
    if not is_valid_url(body.url):
        raise HTTPException(status_code=400, detail=INVALID_URL_MESSAGE)

    try:
        info = await asyncio.to_thread(extract_video_info, body.url.strip())
        return list_formats(info)
    except Exception as exc:
        message = f"Error al obtener los formatos: {exc}"
        logger.error(message)
        raise HTTPException(status_code=500, detail=message)


@app.post("/download")
async def download(body: DownloadRequest) -> Dict[str, str]:
    """
    Download the chosen (or best) video-only and audio-only formats and mux them.

    - both downloads run concurrently and the request waits for both
    - a failed download aborts the request without cancelling the other one
    - temp files are deleted only after a successful mux
    """
    if not is_valid_url(body.url):
        raise HTTPException(status_code=400, detail=INVALID_URL_MESSAGE)

    url = body.url.strip()
    try:
        video_id = video_id_from_url(url)
    except InvalidUrl:
        raise HTTPException(status_code=400, detail=INVALID_URL_MESSAGE)
    output_path = os.path.join(OUTPUT_DIR, f"{video_id}.mp4")

    try:
        info = await asyncio.to_thread(extract_video_info, url)
        video_format, audio_format = select_formats(info, body.videoItag, body.audioItag)
        video_path, audio_path = temp_paths(video_id, video_format, audio_format)

        await asyncio.gather(
            fetch_file(info, video_format, video_path, "video"),
            fetch_file(info, audio_format, audio_path, "audio"),
        )

        await mux_streams(video_path, audio_path, output_path)
    except NoSuitableFormat as exc:
        logger.error(str(exc))
        raise HTTPException(status_code=500, detail=str(exc))
    except MuxFailed as exc:
        message = f"Error al combinar video y audio: {exc}"
        logger.error(message)
        raise HTTPException(status_code=500, detail=message)
    except Exception as exc:
        message = f"Error al procesar el video: {exc}"
        logger.error(message)
        raise HTTPException(status_code=500, detail=message)

    return {"detail": DOWNLOAD_OK_MESSAGE, "file": os.path.basename(output_path)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("server:app", host=HOST, port=PORT, reload=False)
