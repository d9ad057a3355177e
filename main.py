import os
import time
import uuid
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlparse, parse_qsl, urlencode, urlunparse

import requests
from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, HttpUrl

from composer import (
    AssetSet,
    ComposeResult,
    ComposeSettings,
    Composer,
    EncodingEngine,
    FileRef,
    prepared_directories,
)

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024

STATUS_BY_CATEGORY = {
    "validation": 400,
    "encode_failure": 500,
    "encode_timeout": 504,
    "internal": 500,
}


# ----------------------------
# Request models
# ----------------------------
class RemoteComposeRequest(BaseModel):
    image_url: Optional[HttpUrl] = None
    audio_url: Optional[HttpUrl] = None
    video_url: Optional[HttpUrl] = None


# ----------------------------
# Helpers: uploads
# ----------------------------
def _stored_name(original: str) -> str:
    base = os.path.basename(original.replace("\\", "/")) or "upload"
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{base}"


async def save_upload(upload: Optional[UploadFile], settings: ComposeSettings) -> Optional[FileRef]:
    """Store one multipart field in the upload dir; empty form fields count as absent."""
    if upload is None or not upload.filename:
        return None

    dest_path = os.path.join(settings.upload_dir, _stored_name(upload.filename))
    total = 0
    try:
        with open(dest_path, "wb") as f:
            while True:
                chunk = await upload.read(CHUNK)
                if not chunk:
                    break
                total += len(chunk)
                if total > settings.max_bytes:
                    raise HTTPException(status_code=413, detail="File too large")
                await run_in_threadpool(f.write, chunk)
    except BaseException:
        _remove_quietly(dest_path)
        raise

    if total == 0:
        os.remove(dest_path)
        raise HTTPException(status_code=400, detail=f"Uploaded file is empty: {upload.filename}")

    return FileRef(path=dest_path, filename=upload.filename)


# ----------------------------
# Helpers: download
# ----------------------------
def _looks_like_html(first_bytes: bytes) -> bool:
    s = first_bytes.lstrip().lower()
    return (
        s.startswith(b"<!doctype html")
        or s.startswith(b"<html")
        or b"<head" in s[:2000]
    )


def _normalize_dropbox_url(url: str) -> str:
    """
    Converts www.dropbox.com shared links to dl=1 direct download.
    Works for both ?dl=0 and ?dl=1 cases.
    """
    parsed = urlparse(url)
    host = parsed.netloc.lower()
    if "dropbox.com" not in host:
        return url
    qs = dict(parse_qsl(parsed.query, keep_blank_values=True))
    qs["dl"] = "1"
    return urlunparse(parsed._replace(query=urlencode(qs)))


def _remote_name(url: str) -> str:
    name = os.path.basename(urlparse(url).path)
    return name or "download"


def download_file(url: str, dest_path: str, settings: ComposeSettings) -> None:
    url = _normalize_dropbox_url(url)
    try:
        with requests.get(url, stream=True, timeout=settings.download_timeout, allow_redirects=True) as r:
            r.raise_for_status()

            total = 0
            wrote_any = False

            with open(dest_path, "wb") as f:
                for chunk in r.iter_content(chunk_size=CHUNK):
                    if not chunk:
                        continue

                    if not wrote_any:
                        wrote_any = True
                        if _looks_like_html(chunk[:4096]):
                            raise HTTPException(
                                status_code=400,
                                detail="Downloaded HTML instead of media. Check link permissions / dl=1."
                            )

                    total += len(chunk)
                    if total > settings.max_bytes:
                        raise HTTPException(status_code=413, detail="File too large")

                    f.write(chunk)

            if not wrote_any:
                raise HTTPException(status_code=400, detail="Downloaded file is empty")

    except requests.RequestException as e:
        _remove_quietly(dest_path)
        raise HTTPException(status_code=400, detail=f"Download failed: {e}")
    except HTTPException:
        _remove_quietly(dest_path)
        raise


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


async def fetch_remote(url: Optional[HttpUrl], settings: ComposeSettings) -> Optional[FileRef]:
    if url is None:
        return None
    url = str(url)
    dest_path = os.path.join(settings.upload_dir, _stored_name(_remote_name(url)))
    await run_in_threadpool(download_file, url, dest_path, settings)
    return FileRef(path=dest_path, filename=_remote_name(url))


# ----------------------------
# App
# ----------------------------
def _respond(result: ComposeResult) -> JSONResponse:
    if result.ok:
        return JSONResponse(result.payload())
    return JSONResponse(result.payload(), status_code=STATUS_BY_CATEGORY.get(result.category, 500))


def create_app(settings: Optional[ComposeSettings] = None, engine: Optional[EncodingEngine] = None) -> FastAPI:
    settings = settings or ComposeSettings.from_env()
    composer = Composer(settings, engine=engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        with prepared_directories(settings):
            logger.info("uploads -> %s, videos -> %s", settings.upload_dir, settings.output_dir)
            yield

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.state.composer = composer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def server_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s", request.url.path)
        return JSONResponse({"error": "server error"}, status_code=500)

    @app.post("/upload")
    async def upload(
        image: Optional[UploadFile] = File(None),
        main_img: Optional[UploadFile] = File(None, alias="mainImg"),
        audio: Optional[UploadFile] = File(None),
        video: Optional[UploadFile] = File(None),
    ):
        assets = AssetSet(
            image=await save_upload(image or main_img, settings),
            audio=await save_upload(audio, settings),
            video=await save_upload(video, settings),
        )
        return _respond(await composer.compose(assets))

    @app.post("/compose/remote")
    async def compose_remote(request: RemoteComposeRequest):
        if request.audio_url is None and request.video_url is None:
            # nothing worth downloading
            return _respond(await composer.compose(AssetSet()))
        # the cover image only matters next to an audio track
        image_url = request.image_url if request.audio_url is not None else None
        assets = AssetSet(
            image=await fetch_remote(image_url, settings),
            audio=await fetch_remote(request.audio_url, settings),
            video=await fetch_remote(request.video_url, settings),
        )
        return _respond(await composer.compose(assets))

    @app.get("/ping", response_class=PlainTextResponse)
    def ping():
        return PlainTextResponse("pong")

    # check_dir=False: output_dir is created by the lifespan, after mounting
    app.mount(settings.url_prefix, StaticFiles(directory=settings.output_dir, check_dir=False), name="videos")

    return app


_settings = ComposeSettings.from_env()
logging.basicConfig(level=_settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

app = create_app(_settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3000")))
