import os
import json
import uuid
import asyncio
import logging
from contextlib import contextmanager
from enum import Enum
from typing import Dict, Iterator, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

# ----------------------------
# Output contract
# ----------------------------
VIDEO_CODEC = "libx264"
AUDIO_CODEC = "aac"
TARGET_PIXFMT = "yuv420p"
CONTAINER = "mp4"

FFMPEG_TIMEOUT = 2400           # seconds
MAX_BYTES = 300 * 1024 * 1024   # 300MB default
DOWNLOAD_TIMEOUT = 180          # seconds per file download
STDERR_TAIL = 4000


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip() not in ("", "0", "false", "False")


# ----------------------------
# Config
# ----------------------------
class MixedInputPolicy(str, Enum):
    PREFER_AUDIO = "prefer_audio"
    REJECT = "reject"


class ComposeSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    upload_dir: str = os.path.abspath("uploads")
    output_dir: str = os.path.abspath(os.path.join("public", "videos"))
    url_prefix: str = "/videos"

    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    encode_timeout: Optional[float] = FFMPEG_TIMEOUT  # None disables the bound

    max_bytes: int = MAX_BYTES
    download_timeout: int = DOWNLOAD_TIMEOUT

    mixed_input_policy: MixedInputPolicy = MixedInputPolicy.PREFER_AUDIO

    # Synthetic background for audio-only requests
    background_size: str = Field("1280x720", pattern=r"^\d+x\d+$")
    background_color: str = "black"
    background_duration: int = 9999  # nominal only, -shortest trims to the audio

    debug_probes: bool = False
    log_level: str = "INFO"
    cors_origins: List[str] = ["*"]

    @classmethod
    def from_env(cls) -> "ComposeSettings":
        timeout = float(os.getenv("FFMPEG_TIMEOUT", str(FFMPEG_TIMEOUT)))
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            upload_dir=os.path.abspath(os.getenv("UPLOAD_DIR", "uploads")),
            output_dir=os.path.abspath(os.getenv("OUTPUT_DIR", os.path.join("public", "videos"))),
            url_prefix=os.getenv("VIDEO_URL_PREFIX", "/videos").rstrip("/"),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
            encode_timeout=timeout if timeout > 0 else None,
            max_bytes=int(os.getenv("MAX_BYTES", str(MAX_BYTES))),
            download_timeout=int(os.getenv("DOWNLOAD_TIMEOUT", str(DOWNLOAD_TIMEOUT))),
            mixed_input_policy=os.getenv("MIXED_INPUT_POLICY", MixedInputPolicy.PREFER_AUDIO.value),
            background_size=os.getenv("BACKGROUND_SIZE", "1280x720"),
            background_color=os.getenv("BACKGROUND_COLOR", "black"),
            background_duration=int(os.getenv("BACKGROUND_DURATION", "9999")),
            debug_probes=_env_flag("DEBUG_PROBES"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=origins or ["*"],
        )


@contextmanager
def prepared_directories(settings: ComposeSettings) -> Iterator[ComposeSettings]:
    """
    Create the upload/output directories for the lifetime of the scope.
    Directories created here are removed again if the scope fails;
    on a clean exit they are left in place (they hold served videos).
    """
    created: List[str] = []
    try:
        for path in (settings.upload_dir, settings.output_dir):
            if os.path.isdir(path):
                continue
            # remember every level we create so a failed startup leaves nothing behind
            missing = []
            probe = path
            while probe and not os.path.exists(probe):
                missing.append(probe)
                probe = os.path.dirname(probe)
            os.makedirs(path, exist_ok=True)
            created.extend(missing)
        yield settings
    except BaseException:
        for path in sorted(created, key=len, reverse=True):
            try:
                os.rmdir(path)
            except OSError:
                logger.warning("could not remove %s during startup rollback", path)
        raise


# ----------------------------
# Errors
# ----------------------------
class ComposeError(Exception):
    category = "internal"


class AssetValidationError(ComposeError):
    category = "validation"


class InternalComposeError(ComposeError):
    category = "internal"


class EncodeFailure(ComposeError):
    category = "encode_failure"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class EncodeTimeout(EncodeFailure):
    category = "encode_timeout"


# ----------------------------
# Data model
# ----------------------------
class FileRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    filename: str = ""


class AssetSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    image: Optional[FileRef] = None
    audio: Optional[FileRef] = None
    video: Optional[FileRef] = None

    def present(self) -> List[str]:
        return [name for name in ("image", "audio", "video") if getattr(self, name) is not None]


class Pipeline(str, Enum):
    VIDEO_PASSTHROUGH = "video_passthrough_transcode"
    IMAGE_AUDIO = "image_audio_compose"
    BLACK_BACKGROUND_AUDIO = "black_background_audio_compose"


class SourceKind(str, Enum):
    FILE = "file"
    COLOR = "color"


class SyncPolicy(str, Enum):
    NONE = "none"
    SHORTEST = "shortest"


class InputSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    source: str                         # file path or generator descriptor
    loop: bool = False                  # loop to output duration
    input_format: Optional[str] = None  # e.g. "lavfi" for generator sources


class JobDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    pipeline: Pipeline
    inputs: Tuple[InputSpec, ...]
    output_options: Tuple[str, ...]
    output_path: str
    sync: SyncPolicy = SyncPolicy.NONE

    @property
    def staging_path(self) -> str:
        return self.output_path + ".part"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ENCODE_FAILURE = "encode_failure"
    ENCODE_TIMEOUT = "encode_timeout"


class JobOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    job_id: str
    output_path: str
    error_detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS


class ComposeResult(BaseModel):
    id: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None
    category: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> Dict[str, str]:
        if self.ok:
            return {"id": self.id, "url": self.url}
        body = {"error": self.error}
        if self.detail:
            body["detail"] = self.detail
        return body


# ----------------------------
# Pipeline selection
# ----------------------------
def select_pipeline(
    assets: AssetSet,
    mixed_policy: MixedInputPolicy = MixedInputPolicy.PREFER_AUDIO,
) -> Pipeline:
    mixed_policy = MixedInputPolicy(mixed_policy)
    if assets.video is not None and assets.audio is None:
        return Pipeline.VIDEO_PASSTHROUGH

    if assets.audio is not None:
        if assets.video is not None:
            if mixed_policy == MixedInputPolicy.REJECT:
                raise AssetValidationError("send either audio or video, not both")
            logger.warning("audio and video both supplied; ignoring video %s", assets.video.filename or assets.video.path)
        if assets.image is not None:
            return Pipeline.IMAGE_AUDIO
        return Pipeline.BLACK_BACKGROUND_AUDIO

    raise AssetValidationError("at least one of audio or video required")


# ----------------------------
# Job descriptors
# ----------------------------
PASSTHROUGH_OPTIONS = (
    "-c:v", VIDEO_CODEC,
    "-c:a", AUDIO_CODEC,
    "-movflags", "+faststart",
    "-f", CONTAINER,
)

COMPOSE_OPTIONS = (
    "-c:v", VIDEO_CODEC,
    "-c:a", AUDIO_CODEC,
    "-pix_fmt", TARGET_PIXFMT,
    "-movflags", "+faststart",
    "-f", CONTAINER,
)


def color_source(settings: ComposeSettings) -> str:
    return (
        f"color=size={settings.background_size}"
        f":duration={settings.background_duration}"
        f":color={settings.background_color}"
    )


def new_output(settings: ComposeSettings) -> Tuple[str, str]:
    """Fresh (job_id, output_path) pair that does not exist on disk yet."""
    while True:
        job_id = uuid.uuid4().hex
        path = os.path.join(settings.output_dir, f"{job_id}.mp4")
        if not os.path.exists(path) and not os.path.exists(path + ".part"):
            return job_id, path


def _file_input(ref: Optional[FileRef], role: str, loop: bool = False) -> InputSpec:
    if ref is None:
        raise InternalComposeError(f"{role} file missing for selected pipeline")
    return InputSpec(kind=SourceKind.FILE, source=ref.path, loop=loop)


def build_job(pipeline: Pipeline, assets: AssetSet, settings: ComposeSettings) -> JobDescriptor:
    if pipeline is Pipeline.VIDEO_PASSTHROUGH:
        inputs = (_file_input(assets.video, "video"),)
        options, sync = PASSTHROUGH_OPTIONS, SyncPolicy.NONE
    elif pipeline is Pipeline.IMAGE_AUDIO:
        inputs = (
            _file_input(assets.image, "image", loop=True),
            _file_input(assets.audio, "audio"),
        )
        options, sync = COMPOSE_OPTIONS, SyncPolicy.SHORTEST
    elif pipeline is Pipeline.BLACK_BACKGROUND_AUDIO:
        inputs = (
            InputSpec(kind=SourceKind.COLOR, source=color_source(settings), input_format="lavfi"),
            _file_input(assets.audio, "audio"),
        )
        options, sync = COMPOSE_OPTIONS, SyncPolicy.SHORTEST
    else:
        raise InternalComposeError(f"unknown pipeline {pipeline!r}")

    job_id, output_path = new_output(settings)
    return JobDescriptor(
        job_id=job_id,
        pipeline=pipeline,
        inputs=inputs,
        output_options=options,
        output_path=output_path,
        sync=sync,
    )


# ----------------------------
# Encoding engine (ffmpeg)
# ----------------------------
class EncodingEngine(Protocol):
    async def encode(self, job: JobDescriptor, destination: str) -> None:
        ...


class FfmpegEngine:
    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe", debug_probes: bool = False):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.debug_probes = debug_probes

    @classmethod
    def from_settings(cls, settings: ComposeSettings) -> "FfmpegEngine":
        return cls(settings.ffmpeg_bin, settings.ffprobe_bin, settings.debug_probes)

    def build_command(self, job: JobDescriptor, destination: str) -> List[str]:
        cmd = [self.ffmpeg_bin, "-hide_banner", "-y"]
        for item in job.inputs:
            if item.input_format:
                cmd += ["-f", item.input_format]
            if item.loop:
                cmd += ["-loop", "1"]
            cmd += ["-i", item.source]
        cmd += list(job.output_options)
        if job.sync is SyncPolicy.SHORTEST:
            cmd.append("-shortest")
        cmd.append(destination)
        return cmd

    async def encode(self, job: JobDescriptor, destination: str) -> None:
        cmd = self.build_command(job, destination)
        logger.debug("ffmpeg %s", " ".join(cmd[1:]))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeFailure(f"could not start ffmpeg: {e}")

        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # timeout or client gone: do not leave ffmpeg running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            tail = stderr.decode(errors="ignore")[-STDERR_TAIL:].strip()
            raise EncodeFailure(tail or f"ffmpeg exited with status {proc.returncode}")

        if self.debug_probes:
            try:
                logger.info("OUTPUT PROBE %s: %s", job.job_id, await self.probe(destination))
            except Exception as e:
                logger.info("OUTPUT PROBE FAILED %s: %r", job.job_id, e)

    async def probe(self, path: str) -> Dict:
        proc = await asyncio.create_subprocess_exec(
            self.ffprobe_bin, "-hide_banner", "-v", "error",
            "-show_streams", "-show_format", "-of", "json", path,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await asyncio.wait_for(proc.communicate(), timeout=30)
        if proc.returncode != 0:
            raise RuntimeError(err.decode(errors="ignore").strip())
        return json.loads(out.decode(errors="ignore"))


# ----------------------------
# Execution
# ----------------------------
def _discard(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class EncodeExecutor:
    """
    Runs one JobDescriptor through the engine, exactly once.

    The engine writes to the job's staging path; the file only appears at
    output_path after the engine reported success.
    """

    def __init__(self, engine: EncodingEngine, timeout: Optional[float] = FFMPEG_TIMEOUT):
        self.engine = engine
        self.timeout = timeout

    async def execute(self, job: JobDescriptor) -> JobOutcome:
        staging = job.staging_path
        logger.info("encode %s started (%s)", job.job_id, job.pipeline.value)
        try:
            try:
                await asyncio.wait_for(self.engine.encode(job, staging), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise EncodeTimeout(f"encode exceeded {self.timeout:g}s")
            os.replace(staging, job.output_path)
        except EncodeFailure as e:
            _discard(staging)
            timed_out = isinstance(e, EncodeTimeout)
            logger.error("encode %s %s: %s", job.job_id, "timed out" if timed_out else "failed", e.detail)
            return JobOutcome(
                status=OutcomeStatus.ENCODE_TIMEOUT if timed_out else OutcomeStatus.ENCODE_FAILURE,
                job_id=job.job_id,
                output_path=job.output_path,
                error_detail=e.detail,
            )
        except BaseException:
            _discard(staging)
            raise

        logger.info("encode %s finished -> %s", job.job_id, job.output_path)
        return JobOutcome(status=OutcomeStatus.SUCCESS, job_id=job.job_id, output_path=job.output_path)


# ----------------------------
# Result mapping
# ----------------------------
def scrub_paths(text: str, roots: List[str]) -> str:
    """Strip absolute upload/output directories from engine diagnostics."""
    for root in sorted({os.path.abspath(r) for r in roots if r}, key=len, reverse=True):
        text = text.replace(root + os.sep, "").replace(root, "")
    return text


def map_outcome(outcome: JobOutcome, settings: ComposeSettings) -> ComposeResult:
    if outcome.ok:
        return ComposeResult(id=outcome.job_id, url=f"{settings.url_prefix}/{outcome.job_id}.mp4")
    detail = scrub_paths(outcome.error_detail or "", [settings.upload_dir, settings.output_dir])
    if outcome.status is OutcomeStatus.ENCODE_TIMEOUT:
        return ComposeResult(error="ffmpeg timed out", detail=detail, category=EncodeTimeout.category)
    return ComposeResult(error="ffmpeg error", detail=detail, category=EncodeFailure.category)


# ----------------------------
# Orchestration
# ----------------------------
class Composer:
    def __init__(self, settings: ComposeSettings, engine: Optional[EncodingEngine] = None):
        self.settings = settings
        self.executor = EncodeExecutor(engine or FfmpegEngine.from_settings(settings), settings.encode_timeout)

    async def compose(self, assets: AssetSet) -> ComposeResult:
        try:
            pipeline = select_pipeline(assets, self.settings.mixed_input_policy)
        except AssetValidationError as e:
            return ComposeResult(error=str(e), category=e.category)

        try:
            job = build_job(pipeline, assets, self.settings)
            outcome = await self.executor.execute(job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("compose failed for %s", assets.present())
            return ComposeResult(error="server error", category=InternalComposeError.category)

        return map_outcome(outcome, self.settings)
