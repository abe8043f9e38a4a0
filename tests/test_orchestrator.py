from __future__ import annotations

import threading
from pathlib import Path

import pytest

from otrcut.config import DecoderSettings, PathSettings, PipelineSettings, Settings
from otrcut.cutlists import client
from otrcut.models import CandidateHeader, CutSpec, Segment, Video, VideoResult, VideoStatus
from otrcut.pipeline import orchestrator
from otrcut.pipeline.orchestrator import JoinBarrier, RunContext, StageSignal, process_videos
from otrcut.pipeline.progress import Stage
from otrcut.tools import cutter, decoder
from otrcut.tools.runner import ToolOutcome

KEY = "Tatort_18.01.07_20-15_ard_90_TVOON_DE.mpg.HQ.avi"

LISTING = b"""<files>
<cutlist><id>high</id><rating>4.8</rating></cutlist>
<cutlist><id>low</id><rating>2.1</rating></cutlist>
</files>"""

MALFORMED_CUTLIST = b"[General]\nNoOfCuts=2\n[Cut0]\nStart=1\n[Cut1]\nStart=10\nDuration=5\n"
GOOD_CUTLIST = b"[General]\nNoOfCuts=1\nFramesPerSecond=25\n[Cut0]\nStart=60\nDuration=1200\n"


class _FileWritingRunner:
    """Pretends to be otrdecoder / mkvmerge by creating their output files."""

    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.commands: list[list[str]] = []
        self._lock = threading.Lock()

    def invoke(self, command, on_output=None) -> ToolOutcome:
        with self._lock:
            self.commands.append(command)
        tool = command[0]
        if tool in self.failing:
            return ToolOutcome(returncode=1, stderr=f"{tool}: it broke\n")

        output = Path(command[command.index("-o") + 1])
        if tool == "otrdecoder":
            source = Path(command[command.index("-i") + 1])
            output = output / source.name.removesuffix(".otrkey")
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(b"video")
        if on_output is not None:
            on_output("100%")
        return ToolOutcome(returncode=0)


def _settings(tmp_path: Path) -> Settings:
    return Settings(
        paths=PathSettings(working_dir=tmp_path),
        decoder=DecoderSettings(username="user", password="secret"),
        pipeline=PipelineSettings(max_parallel_items=2, cleanup=True),
    )


def _raw_video(tmp_path: Path) -> Video:
    path = tmp_path / f"{KEY}.otrkey"
    path.write_bytes(b"encrypted")
    return Video(key=KEY, status=VideoStatus.RAW, path=path)


def _spec() -> CutSpec:
    return CutSpec(source_id="7", segments=[Segment(time_start=0.0, time_duration=30.0)])


def test_cut_videos_are_never_scheduled(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cut_path = tmp_path / "Cut" / f"{KEY}.cut.mkv"
    video = Video(key=KEY, status=VideoStatus.CUT, path=cut_path)
    runner = _FileWritingRunner()

    def _unexpected(*_args, **_kwargs):
        raise AssertionError("cut videos must not reach the cutlist server")

    monkeypatch.setattr(orchestrator, "fetch_headers", _unexpected)

    processed = process_videos({KEY: video}, RunContext(settings=_settings(tmp_path), runner=runner))

    assert processed == []
    assert runner.commands == []
    assert video.status is VideoStatus.CUT
    assert video.result is None


def test_raw_video_is_decoded_and_cut_with_first_parseable_cutlist(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    documents = {"high": MALFORMED_CUTLIST, "low": GOOD_CUTLIST}

    def _download(url: str, **_kwargs: object) -> bytes:
        if "getxml.php" in url:
            assert f"name={KEY}" in url
            return LISTING
        return documents[url.rsplit("=", 1)[-1]]

    monkeypatch.setattr(client, "download", _download)
    settings = _settings(tmp_path)
    runner = _FileWritingRunner()
    video = _raw_video(tmp_path)
    context = RunContext(settings=settings, runner=runner)

    processed = process_videos({KEY: video}, context)

    assert processed == [KEY]
    assert video.status is VideoStatus.CUT
    assert video.result is VideoResult.OK
    assert video.error is None
    assert video.cut_spec is not None and video.cut_spec.source_id == "low"
    assert video.path == settings.paths.cut_dir / f"{KEY}.cut.mkv"
    assert video.path.exists()
    assert [command[0] for command in runner.commands] == ["otrdecoder", "mkvmerge"]
    assert "parts:00:01:00.000000-00:21:00.000000" in runner.commands[1]
    assert not (tmp_path / f"{KEY}.otrkey").exists()
    assert not (settings.paths.encoded_dir / f"{KEY}.otrkey").exists()
    assert not (settings.paths.decoded_dir / KEY).exists()
    assert context.progress.snapshot()[(KEY, Stage.APPLY)] == 100


def test_apply_waits_for_decode_even_when_cutlist_is_ready(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    release_decode = threading.Event()
    cutlist_ready = threading.Event()
    cut_calls: list[str] = []

    def _decode_video(*, key, output_dir, **_kwargs):
        assert release_decode.wait(timeout=5)
        output_dir.mkdir(parents=True, exist_ok=True)
        decoded = output_dir / key
        decoded.write_bytes(b"video")
        return decoded

    def _fetch_detail(candidate_ids, **_kwargs):
        cutlist_ready.set()
        return _spec()

    def _cut_video(*, key, output_dir, **_kwargs):
        cut_calls.append(key)
        output_dir.mkdir(parents=True, exist_ok=True)
        output = output_dir / f"{key}.cut.mkv"
        output.write_bytes(b"video")
        return output

    monkeypatch.setattr(decoder, "decode_video", _decode_video)
    monkeypatch.setattr(cutter, "cut_video", _cut_video)
    monkeypatch.setattr(orchestrator, "fetch_headers", lambda name, **_kwargs: [CandidateHeader("7", 3.0)])
    monkeypatch.setattr(orchestrator, "fetch_detail", _fetch_detail)

    video = _raw_video(tmp_path)
    context = RunContext(settings=_settings(tmp_path), runner=_FileWritingRunner())
    worker = threading.Thread(target=process_videos, args=({KEY: video}, context))
    worker.start()

    assert cutlist_ready.wait(timeout=5)
    worker.join(timeout=0.2)
    assert worker.is_alive()
    assert cut_calls == []

    release_decode.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert cut_calls == [KEY]
    assert video.status is VideoStatus.CUT
    assert video.result is VideoResult.OK


def test_apply_waits_for_cutlist_even_when_decode_is_done(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    release_cutlist = threading.Event()
    decode_done = threading.Event()
    cut_calls: list[str] = []

    def _decode_video(*, key, output_dir, **_kwargs):
        output_dir.mkdir(parents=True, exist_ok=True)
        decoded = output_dir / key
        decoded.write_bytes(b"video")
        decode_done.set()
        return decoded

    def _fetch_detail(candidate_ids, **_kwargs):
        assert release_cutlist.wait(timeout=5)
        return _spec()

    def _cut_video(*, key, output_dir, **_kwargs):
        cut_calls.append(key)
        output_dir.mkdir(parents=True, exist_ok=True)
        output = output_dir / f"{key}.cut.mkv"
        output.write_bytes(b"video")
        return output

    monkeypatch.setattr(decoder, "decode_video", _decode_video)
    monkeypatch.setattr(cutter, "cut_video", _cut_video)
    monkeypatch.setattr(orchestrator, "fetch_headers", lambda name, **_kwargs: [CandidateHeader("7", 3.0)])
    monkeypatch.setattr(orchestrator, "fetch_detail", _fetch_detail)

    video = _raw_video(tmp_path)
    context = RunContext(settings=_settings(tmp_path), runner=_FileWritingRunner())
    worker = threading.Thread(target=process_videos, args=({KEY: video}, context))
    worker.start()

    assert decode_done.wait(timeout=5)
    worker.join(timeout=0.2)
    assert worker.is_alive()
    assert cut_calls == []
    assert video.status is VideoStatus.DECODED

    release_cutlist.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert cut_calls == [KEY]
    assert video.status is VideoStatus.CUT
    assert video.result is VideoResult.OK


def test_formats_of_one_show_are_cut_into_separate_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    looked_up: list[str] = []

    def _fetch_headers(name, **_kwargs):
        looked_up.append(name)
        return [CandidateHeader("7", 3.0)]

    monkeypatch.setattr(orchestrator, "fetch_headers", _fetch_headers)
    monkeypatch.setattr(orchestrator, "fetch_detail", lambda candidate_ids, **_kwargs: _spec())
    settings = _settings(tmp_path)
    keys = [
        "Tatort_18.01.07_20-15_ard_90_TVOON_DE.mpg.HD.ac3",
        "Tatort_18.01.07_20-15_ard_90_TVOON_DE.mpg.HD.avi",
    ]
    videos = {}
    for key in keys:
        path = tmp_path / f"{key}.otrkey"
        path.write_bytes(b"encrypted")
        videos[key] = Video(key=key, status=VideoStatus.RAW, path=path)

    process_videos(videos, RunContext(settings=settings, runner=_FileWritingRunner()))

    assert sorted(looked_up) == keys
    for key in keys:
        assert videos[key].result is VideoResult.OK
        assert videos[key].path == settings.paths.cut_dir / f"{key}.cut.mkv"
        assert videos[key].path.exists()


def test_decode_failure_skips_cutting(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(orchestrator, "fetch_headers", lambda name, **_kwargs: [CandidateHeader("7", 3.0)])
    monkeypatch.setattr(orchestrator, "fetch_detail", lambda candidate_ids, **_kwargs: _spec())
    settings = _settings(tmp_path)
    runner = _FileWritingRunner(failing={"otrdecoder"})
    video = _raw_video(tmp_path)

    process_videos({KEY: video}, RunContext(settings=settings, runner=runner))

    assert video.status is VideoStatus.RAW
    assert video.result is VideoResult.ERROR
    assert "it broke" in (video.error or "")
    assert [command[0] for command in runner.commands] == ["otrdecoder"]
    assert (settings.paths.log_dir / f"{KEY}.decode.error").read_text(encoding="utf-8") == "otrdecoder: it broke\n"
    assert video.path == settings.paths.encoded_dir / f"{KEY}.otrkey"
    assert video.path.exists()


def test_missing_cutlist_leaves_decoded_video_uncut(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(orchestrator, "fetch_headers", lambda name, **_kwargs: [])
    decoded = tmp_path / "Decoded" / KEY
    decoded.parent.mkdir()
    decoded.write_bytes(b"video")
    video = Video(key=KEY, status=VideoStatus.DECODED, path=decoded)
    runner = _FileWritingRunner()

    processed = process_videos({KEY: video}, RunContext(settings=_settings(tmp_path), runner=runner))

    assert processed == [KEY]
    assert video.status is VideoStatus.DECODED
    assert video.result is VideoResult.ERROR
    assert video.error == "no cutlists available"
    assert runner.commands == []
    assert decoded.exists()


def test_cut_failure_keeps_decoded_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(orchestrator, "fetch_headers", lambda name, **_kwargs: [CandidateHeader("7", 3.0)])
    monkeypatch.setattr(orchestrator, "fetch_detail", lambda candidate_ids, **_kwargs: _spec())
    settings = _settings(tmp_path)
    decoded = tmp_path / KEY
    decoded.write_bytes(b"video")
    video = Video(key=KEY, status=VideoStatus.DECODED, path=decoded)

    process_videos({KEY: video}, RunContext(settings=settings, runner=_FileWritingRunner(failing={"mkvmerge"})))

    assert video.status is VideoStatus.DECODED
    assert video.result is VideoResult.ERROR
    assert video.path == settings.paths.decoded_dir / KEY
    assert video.path.exists()
    assert (settings.paths.log_dir / f"{KEY}.cut.error").exists()


def test_join_barrier_releases_after_both_signals() -> None:
    barrier = JoinBarrier()
    barrier.signal(StageSignal(Stage.DECODE, ok=True))

    assert barrier.pending == 1
    with pytest.raises(TimeoutError):
        barrier.wait(timeout=0.01)

    barrier.signal(StageSignal(Stage.ACQUIRE, ok=False, error="no cutlists available"))
    signals = barrier.wait(timeout=1)

    assert [signal.stage for signal in signals] == [Stage.DECODE, Stage.ACQUIRE]
    with pytest.raises(RuntimeError):
        barrier.signal(StageSignal(Stage.APPLY, ok=True))
