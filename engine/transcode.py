"""Download orchestration: a remux -> re-encode fallback ladder over the yt-dlp CLI.

Each download request owns one temporary directory. Attempts run strictly one
after another inside it; partial output is wiped between attempts and the whole
directory is removed on any failure or cancellation. On success the caller
owns the directory and removes it once the file has been streamed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Sequence

from engine.config import AppConfig
from engine.errors import AuthenticationRequiredError, TranscodeFailedError, requires_login
from engine.logging_utils import log_event
from engine.paths import ensure_dir
from input.video_ref import watch_url
from media.selector import KIND_AUDIO, normalize_kind

logger = logging.getLogger(__name__)

OUTPUT_STEM = "download"
_TEMP_SUFFIXES = (".part", ".ytdl", ".temp", ".tmp")
_OUTPUT_TAIL_CHARS = 4000
_TERMINATE_GRACE_SEC = 3.0
DOWNLOAD_FAILED_MESSAGE = "Download failed. No compatible streams or mux/transcode error."


class Strategy(str, Enum):
    REMUX = "remux"
    REENCODE = "reencode"
    EXTRACT_AUDIO = "extract_audio"


STATE_FAILED = "failed"


def plan_strategies(kind: str) -> list[Strategy]:
    """Ordered strategies for one request; audio skips straight to extraction."""
    if normalize_kind(kind) == KIND_AUDIO:
        return [Strategy.EXTRACT_AUDIO]
    return [Strategy.REMUX, Strategy.REENCODE]


@dataclass
class AttemptResult:
    strategy: Strategy
    returncode: int | None
    output: str = ""
    timed_out: bool = False
    missing_output: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.missing_output


@dataclass
class DownloadResult:
    path: str
    temp_dir: str
    strategy: Strategy
    states: list[str] = field(default_factory=list)


class FallbackLadder:
    """Run strategies in order until one succeeds.

    ``attempt`` performs one strategy and returns an ``AttemptResult``;
    ``reset`` (optional) clears partial output before every retry.
    ``states`` records every visited state, ending in the winning strategy
    or ``"failed"``.
    """

    def __init__(
        self,
        strategies: Sequence[Strategy],
        attempt: Callable[[Strategy], Awaitable[AttemptResult]],
        reset: Callable[[], None] | None = None,
    ) -> None:
        if not strategies:
            raise ValueError("at least one strategy is required")
        self.strategies = list(strategies)
        self._attempt = attempt
        self._reset = reset
        self.states: list[str] = []
        self.attempts: list[AttemptResult] = []

    async def run(self) -> AttemptResult:
        for index, strategy in enumerate(self.strategies):
            if index and self._reset is not None:
                self._reset()
            self.states.append(strategy.value)
            result = await self._attempt(strategy)
            self.attempts.append(result)
            if result.ok:
                return result
            if requires_login(result.output):
                self.states.append(STATE_FAILED)
                raise AuthenticationRequiredError(detail=result.output.strip()[-500:])
            log_event(
                logging.WARNING,
                "transcode_attempt_failed",
                strategy=strategy.value,
                returncode=result.returncode,
                timed_out=result.timed_out,
                missing_output=result.missing_output,
                output_tail=result.output.strip()[-500:],
            )
        self.states.append(STATE_FAILED)
        raise TranscodeFailedError(
            DOWNLOAD_FAILED_MESSAGE,
            detail=" -> ".join(self.states),
        )


def redact_argv(argv: Sequence[str]) -> list[str]:
    redacted: list[str] = []
    skip_next = False
    for token in argv:
        if skip_next:
            redacted.append("<redacted>")
            skip_next = False
            continue
        redacted.append(token)
        if token in {"--cookies", "--cookies-from-browser"}:
            skip_next = True
    return redacted


def clear_directory(path: str) -> None:
    if not os.path.isdir(path):
        return
    for name in os.listdir(path):
        target = os.path.join(path, name)
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target, ignore_errors=True)
        else:
            try:
                os.remove(target)
            except FileNotFoundError:
                pass


def remove_temp_dir(path: str | None) -> None:
    if path:
        shutil.rmtree(path, ignore_errors=True)


def locate_output(directory: str, extension: str | None = None) -> str | None:
    """Finished output file in ``directory``; partial/temporary files are ignored."""
    candidates = []
    for name in os.listdir(directory):
        if name.endswith(_TEMP_SUFFIXES):
            continue
        full = os.path.join(directory, name)
        if os.path.isfile(full):
            candidates.append(full)
    if not candidates:
        return None
    if extension:
        wanted = f".{extension.lower()}"
        matching = [p for p in candidates if p.lower().endswith(wanted)]
        if matching:
            candidates = matching
    return max(candidates, key=os.path.getsize)


async def _terminate_process(proc, *, grace_sec: float = _TERMINATE_GRACE_SEC) -> None:
    if proc is None or proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_sec)
        return
    except asyncio.TimeoutError:
        logger.warning("yt-dlp ignored SIGTERM for %.1fs; killing pid %s", grace_sec, getattr(proc, "pid", None))
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


class YtDlpTranscoder:
    """Builds yt-dlp argv per strategy and runs the ladder for one download."""

    def __init__(self, config: AppConfig, temp_root: str | None = None, spawn=asyncio.create_subprocess_exec) -> None:
        self.config = config
        self.temp_root = temp_root or config.temp_root
        self._spawn = spawn

    def build_argv(
        self,
        *,
        url: str,
        selector: str,
        sort: str | None,
        strategy: Strategy,
        extension: str,
        output_dir: str,
    ) -> list[str]:
        argv = [self.config.ytdlp_binary, url]
        argv.extend(self.config.cookie_args())
        argv.extend(["-f", selector])
        if sort:
            argv.extend(["-S", sort])
        argv.extend(
            [
                "-o",
                os.path.join(output_dir, f"{OUTPUT_STEM}.%(ext)s"),
                "--no-playlist",
                "--no-warnings",
                "--quiet",
                "--no-check-certificates",
            ]
        )
        for key, value in self.config.extra_headers.items():
            argv.extend(["--add-header", f"{key}:{value}"])
        argv.extend(["--restrict-filenames", "-N", str(self.config.concurrent_fragments)])

        if strategy is Strategy.EXTRACT_AUDIO:
            argv.extend(["--extract-audio", "--audio-format", extension])
        elif strategy is Strategy.REENCODE:
            argv.extend(["--recode-video", extension])
        else:
            argv.extend(["--merge-output-format", extension])
        if self.config.ffmpeg_location:
            argv.extend(["--ffmpeg-location", self.config.ffmpeg_location])
        return argv

    async def run_attempt(self, strategy: Strategy, argv: list[str]) -> AttemptResult:
        timeout = self.config.transcode_timeout_sec or None
        log_event(logging.INFO, "transcode_attempt_start", strategy=strategy.value, argv=redact_argv(argv))
        try:
            proc = await self._spawn(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            return AttemptResult(strategy=strategy, returncode=None, output=f"yt-dlp could not be started: {exc}")

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await _terminate_process(proc)
            return AttemptResult(strategy=strategy, returncode=proc.returncode, timed_out=True)
        except asyncio.CancelledError:
            await asyncio.shield(_terminate_process(proc))
            raise
        output = (stdout or b"").decode("utf-8", errors="replace")[-_OUTPUT_TAIL_CHARS:]
        return AttemptResult(strategy=strategy, returncode=proc.returncode, output=output)

    def make_temp_dir(self) -> str:
        root = self.temp_root
        if root:
            ensure_dir(root)
        return tempfile.mkdtemp(prefix="tubefetch-", dir=root)

    async def download_video(
        self,
        video_id: str,
        *,
        selector: str,
        sort: str | None = None,
        kind: str = "video",
        extension: str = "mp4",
    ) -> DownloadResult:
        """Run the ladder into a fresh temp dir.

        The directory is removed here on failure or cancellation; on success
        the returned ``DownloadResult.temp_dir`` belongs to the caller.
        """
        temp_dir = self.make_temp_dir()
        url = watch_url(video_id)

        async def attempt(strategy: Strategy) -> AttemptResult:
            argv = self.build_argv(
                url=url,
                selector=selector,
                sort=sort,
                strategy=strategy,
                extension=extension,
                output_dir=temp_dir,
            )
            result = await self.run_attempt(strategy, argv)
            if result.ok and locate_output(temp_dir, extension) is None:
                return AttemptResult(
                    strategy=strategy,
                    returncode=result.returncode,
                    output=result.output or "no output file produced",
                    missing_output=True,
                )
            return result

        ladder = FallbackLadder(plan_strategies(kind), attempt, reset=lambda: clear_directory(temp_dir))
        try:
            winner = await ladder.run()
            path = locate_output(temp_dir, extension)
            if path is None:
                raise TranscodeFailedError(DOWNLOAD_FAILED_MESSAGE, detail="output file vanished after success")
        except BaseException:
            remove_temp_dir(temp_dir)
            log_event(logging.INFO, "transcode_temp_removed", video_id=video_id, states=ladder.states)
            raise
        log_event(
            logging.INFO,
            "transcode_succeeded",
            video_id=video_id,
            strategy=winner.strategy.value,
            states=ladder.states,
        )
        return DownloadResult(path=path, temp_dir=temp_dir, strategy=winner.strategy, states=ladder.states)
