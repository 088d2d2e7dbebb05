from __future__ import annotations

import asyncio
import os

import pytest

from engine.config import AppConfig
from engine.errors import AuthenticationRequiredError, TranscodeFailedError
from engine.transcode import (
    AttemptResult,
    FallbackLadder,
    Strategy,
    YtDlpTranscoder,
    locate_output,
    plan_strategies,
    redact_argv,
)


class _FakeProcess:
    def __init__(self, returncode: int, output: bytes = b"", delay: float = 0.0) -> None:
        self._final_returncode = returncode
        self._output = output
        self._delay = delay
        self.returncode = None
        self.terminated = False

    async def communicate(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        self.returncode = self._final_returncode
        return self._output, None

    async def wait(self):
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9


class _FakeSpawner:
    """Plays back one scripted outcome per spawned yt-dlp process."""

    def __init__(self, outcomes: list[dict]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[list[str]] = []
        self.processes: list[_FakeProcess] = []

    async def __call__(self, *argv, stdout=None, stderr=None):
        self.calls.append(list(argv))
        outcome = self.outcomes.pop(0)
        template = argv[argv.index("-o") + 1]
        for name in outcome.get("writes", []):
            path = os.path.join(os.path.dirname(template), name)
            with open(path, "wb") as handle:
                handle.write(b"media-bytes")
        proc = _FakeProcess(outcome.get("returncode", 0), outcome.get("output", b""), outcome.get("delay", 0.0))
        self.processes.append(proc)
        return proc


def _transcoder(tmp_path, outcomes, **config_overrides):
    config = AppConfig(**config_overrides)
    spawner = _FakeSpawner(outcomes)
    return YtDlpTranscoder(config, temp_root=str(tmp_path), spawn=spawner), spawner


def _flag_value(argv: list[str], flag: str) -> str:
    return argv[argv.index(flag) + 1]


def test_plan_strategies() -> None:
    assert plan_strategies("video") == [Strategy.REMUX, Strategy.REENCODE]
    assert plan_strategies("VIDEO") == [Strategy.REMUX, Strategy.REENCODE]
    assert plan_strategies("audio") == [Strategy.EXTRACT_AUDIO]


def test_ladder_records_states_until_failure() -> None:
    tried = []

    async def attempt(strategy):
        tried.append(strategy)
        return AttemptResult(strategy=strategy, returncode=1, output="ffmpeg: codec not supported")

    ladder = FallbackLadder(plan_strategies("video"), attempt)
    with pytest.raises(TranscodeFailedError):
        asyncio.run(ladder.run())

    assert tried == [Strategy.REMUX, Strategy.REENCODE]
    assert ladder.states == ["remux", "reencode", "failed"]


def test_ladder_stops_at_first_success_and_resets_between_attempts() -> None:
    resets = []

    async def attempt(strategy):
        return AttemptResult(strategy=strategy, returncode=0 if strategy is Strategy.REENCODE else 1)

    ladder = FallbackLadder(plan_strategies("video"), attempt, reset=lambda: resets.append(True))
    winner = asyncio.run(ladder.run())

    assert winner.strategy is Strategy.REENCODE
    assert ladder.states == ["remux", "reencode"]
    assert resets == [True]


def test_auth_signal_is_terminal() -> None:
    tried = []

    async def attempt(strategy):
        tried.append(strategy)
        return AttemptResult(strategy=strategy, returncode=1, output="ERROR: Sign in to confirm you're not a bot")

    ladder = FallbackLadder(plan_strategies("video"), attempt)
    with pytest.raises(AuthenticationRequiredError):
        asyncio.run(ladder.run())

    assert tried == [Strategy.REMUX]
    assert ladder.states == ["remux", "failed"]


def test_argv_per_strategy(tmp_path) -> None:
    transcoder, _ = _transcoder(
        tmp_path,
        [],
        cookies_file="/secrets/cookies.txt",
        ffmpeg_location="/opt/ffmpeg",
        concurrent_fragments=4,
    )
    common = dict(url="https://www.youtube.com/watch?v=abcdefghijk", selector="137+140", output_dir=str(tmp_path))

    remux = transcoder.build_argv(sort="res:1080,fps,br", strategy=Strategy.REMUX, extension="mp4", **common)
    reencode = transcoder.build_argv(sort=None, strategy=Strategy.REENCODE, extension="mp4", **common)
    audio = transcoder.build_argv(sort=None, strategy=Strategy.EXTRACT_AUDIO, extension="mp3", **common)

    assert remux[:2] == ["yt-dlp", "https://www.youtube.com/watch?v=abcdefghijk"]
    assert _flag_value(remux, "--cookies") == "/secrets/cookies.txt"
    assert _flag_value(remux, "-f") == "137+140"
    assert _flag_value(remux, "-S") == "res:1080,fps,br"
    assert _flag_value(remux, "-o") == os.path.join(str(tmp_path), "download.%(ext)s")
    assert _flag_value(remux, "-N") == "4"
    assert _flag_value(remux, "--merge-output-format") == "mp4"
    assert _flag_value(remux, "--ffmpeg-location") == "/opt/ffmpeg"
    for flag in ("--no-playlist", "--no-warnings", "--quiet", "--no-check-certificates", "--restrict-filenames"):
        assert flag in remux
    assert "referer:https://www.youtube.com/" in remux

    assert "-S" not in reencode
    assert _flag_value(reencode, "--recode-video") == "mp4"
    assert "--merge-output-format" not in reencode
    assert _flag_value(audio, "--audio-format") == "mp3"
    assert "--extract-audio" in audio


def test_cookie_paths_are_redacted() -> None:
    argv = ["yt-dlp", "url", "--cookies", "/secrets/cookies.txt", "-f", "22"]

    assert redact_argv(argv) == ["yt-dlp", "url", "--cookies", "<redacted>", "-f", "22"]


def test_remux_failure_falls_back_to_reencode(tmp_path) -> None:
    transcoder, spawner = _transcoder(
        tmp_path,
        [
            {"returncode": 1, "output": b"ERROR: Could not remux", "writes": ["download.f248.webm.part"]},
            {"returncode": 0, "writes": ["download.mp4"]},
        ],
    )

    result = asyncio.run(transcoder.download_video("abcdefghijk", selector="248+140", extension="mp4"))

    assert result.strategy is Strategy.REENCODE
    assert result.states == ["remux", "reencode"]
    assert os.path.basename(result.path) == "download.mp4"
    assert os.listdir(result.temp_dir) == ["download.mp4"]
    assert "--merge-output-format" in spawner.calls[0]
    assert "--recode-video" in spawner.calls[1]


def test_exhausted_ladder_removes_temp_dir(tmp_path) -> None:
    transcoder, spawner = _transcoder(
        tmp_path,
        [
            {"returncode": 1, "writes": ["download.f137.mp4.part"]},
            {"returncode": 1, "writes": ["download.temp.mp4.part"]},
        ],
    )

    with pytest.raises(TranscodeFailedError) as excinfo:
        asyncio.run(transcoder.download_video("abcdefghijk", selector="137+140", extension="mp4"))

    assert len(spawner.calls) == 2
    assert "remux -> reencode -> failed" == excinfo.value.detail
    assert os.listdir(tmp_path) == []


def test_zero_exit_without_output_counts_as_failure(tmp_path) -> None:
    transcoder, _ = _transcoder(tmp_path, [{"returncode": 0}, {"returncode": 0}])

    with pytest.raises(TranscodeFailedError):
        asyncio.run(transcoder.download_video("abcdefghijk", selector="22", extension="mp4"))

    assert os.listdir(tmp_path) == []


def test_attempt_timeout_terminates_process(tmp_path) -> None:
    transcoder, spawner = _transcoder(
        tmp_path,
        [{"returncode": 0, "delay": 5.0}, {"returncode": 0, "writes": ["download.mp4"]}],
        transcode_timeout_sec=0.05,
    )

    result = asyncio.run(transcoder.download_video("abcdefghijk", selector="22", extension="mp4"))

    assert spawner.processes[0].terminated is True
    assert result.strategy is Strategy.REENCODE


def test_audio_download_runs_single_extraction(tmp_path) -> None:
    transcoder, spawner = _transcoder(tmp_path, [{"returncode": 0, "writes": ["download.mp3"]}])

    result = asyncio.run(
        transcoder.download_video("abcdefghijk", selector="ba/bestaudio", kind="audio", extension="mp3")
    )

    assert result.strategy is Strategy.EXTRACT_AUDIO
    assert len(spawner.calls) == 1
    assert "--extract-audio" in spawner.calls[0]


def test_locate_output_ignores_partial_files(tmp_path) -> None:
    (tmp_path / "download.mp4.part").write_bytes(b"x" * 100)
    (tmp_path / "download.webm").write_bytes(b"x" * 10)
    (tmp_path / "download.mp4").write_bytes(b"x" * 5)

    assert locate_output(str(tmp_path), "mp4") == str(tmp_path / "download.mp4")
    assert locate_output(str(tmp_path), "mkv") == str(tmp_path / "download.webm")


def test_zero_exit_without_output_advances_to_reencode(tmp_path) -> None:
    transcoder, spawner = _transcoder(tmp_path, [{"returncode": 0}, {"returncode": 0, "writes": ["download.mp4"]}])

    result = asyncio.run(transcoder.download_video("abcdefghijk", selector="22", extension="mp4"))

    assert len(spawner.calls) == 2
    assert result.strategy is Strategy.REENCODE
    assert result.states == ["remux", "reencode"]
    assert os.path.isfile(result.path)


def test_cancelled_download_terminates_process_and_removes_temp_dir(tmp_path) -> None:
    transcoder, spawner = _transcoder(tmp_path, [{"returncode": 0, "delay": 5.0, "writes": ["download.f137.mp4.part"]}])

    async def scenario():
        task = asyncio.ensure_future(transcoder.download_video("abcdefghijk", selector="137+140", extension="mp4"))
        while not spawner.processes:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert spawner.processes[0].terminated is True
    assert os.listdir(tmp_path) == []
