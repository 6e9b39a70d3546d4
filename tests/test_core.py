# tests/test_core.py
from __future__ import annotations

import threading
import time
from io import BytesIO

import pytest
import requests
from PIL import Image

import imgcrawl_core
from imgcrawl_core import (
    BYTES_PER_MB,
    PLACEHOLDER_SIZE,
    DownloadCounter,
    ImgCrawlCore,
    PauseGate,
    directory_size,
)
from imgcrawl_keyspace import Alphabet


def _jpeg(size) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buf, "JPEG")
    return buf.getvalue()


PLACEHOLDER = _jpeg(PLACEHOLDER_SIZE)
REAL = _jpeg((64, 48))


class FakeResp:
    def __init__(self, content: bytes, status: int = 200):
        self.content = content
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Serves REAL for identifiers in `found`, the placeholder otherwise."""

    def __init__(self, found=(), broken=(), errors=()):
        self.found = set(found)
        self.broken = set(broken)
        self.errors = set(errors)
        self.urls = []
        self.timeouts = []
        self.lock = threading.Lock()

    def get(self, url, timeout=None):
        with self.lock:
            self.urls.append(url)
            self.timeouts.append(timeout)
        identifier = url.rsplit("/", 1)[1][:-len(".jpg")]
        if identifier in self.errors:
            raise requests.ConnectionError("connection refused")
        if identifier in self.broken:
            return FakeResp(b"not an image")
        if identifier in self.found:
            return FakeResp(REAL)
        return FakeResp(PLACEHOLDER)


def _core(tmp_path, session, **kwargs):
    kwargs.setdefault("alphabet", Alphabet("AB01"))
    kwargs.setdefault("search_length", 2)
    kwargs.setdefault("max_workers", 4)
    return ImgCrawlCore(
        output_dir=str(tmp_path / "Download"),
        session=session,
        log_file=None,
        **kwargs,
    )


# ---------------- shared state ----------------

def test_pause_gate_exchange_semantics():
    gate = PauseGate()
    assert gate.is_paused() is False
    assert gate.pause() is True
    assert gate.pause() is False  # already paused
    assert gate.exchange(True) is True
    assert gate.resume() is True
    assert gate.resume() is False
    assert gate.is_paused() is False


def test_pause_gate_wait_returns_false_on_stop():
    gate = PauseGate()
    gate.pause()
    stop = threading.Event()
    stop.set()
    assert gate.wait_while_paused(stop, poll_interval=0.01) is False


def test_download_counter_is_thread_safe():
    counter = DownloadCounter()
    seen = []

    def bump():
        for _ in range(500):
            seen.append(counter.increment())

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter.value == 4000
    assert sorted(seen) == list(range(1, 4001))


def test_directory_size_is_recursive(tmp_path):
    (tmp_path / "a").write_bytes(b"x" * 10)
    (tmp_path / "sub" / "deeper").mkdir(parents=True)
    (tmp_path / "sub" / "b").write_bytes(b"x" * 20)
    (tmp_path / "sub" / "deeper" / "c").write_bytes(b"x" * 30)
    assert directory_size(tmp_path) == 60


# ---------------- pipeline ----------------

def test_constructor_creates_output_dir(tmp_path):
    core = _core(tmp_path, FakeSession())
    assert (tmp_path / "Download").is_dir()
    assert core.start_template == "--"


def test_constructor_rejects_bad_values(tmp_path):
    with pytest.raises(ValueError):
        _core(tmp_path, FakeSession(), search_length=0)
    with pytest.raises(ValueError):
        _core(tmp_path, FakeSession(), max_workers=0)


def test_image_url(tmp_path):
    core = _core(tmp_path, FakeSession())
    assert core.image_url("aB3xY") == "http://i.imgur.com/aB3xY.jpg"


def test_placeholder_is_not_persisted(tmp_path):
    session = FakeSession()
    core = _core(tmp_path, session)

    assert core._fetch_and_persist("AB") is None
    assert list((tmp_path / "Download").iterdir()) == []
    assert core.counter.value == 0
    assert core.get_stats()["placeholders"] == 1
    assert session.timeouts == [imgcrawl_core.CONNECTION_TIMEOUT]


def test_real_image_is_persisted_with_counter_name(tmp_path):
    core = _core(tmp_path, FakeSession(found={"AB", "B0"}))

    first = core._fetch_and_persist("AB")
    second = core._fetch_and_persist("B0")

    assert first.name == "1_AB.jpg"
    assert second.name == "2_B0.jpg"
    assert first.read_bytes() == REAL
    assert sorted(p.name for p in (tmp_path / "Download").iterdir()) == ["1_AB.jpg", "2_B0.jpg"]


@pytest.mark.parametrize("session", [
    FakeSession(broken={"AA"}),
    FakeSession(errors={"AA"}),
])
def test_fetch_failures_are_logged_and_swallowed(tmp_path, session):
    core = _core(tmp_path, session)

    assert core._fetch_and_persist("AA") is None
    assert core.get_stats()["failed"] == 1
    assert core.counter.value == 0
    logs, _ = core.get_logs()
    assert any("[ERROR]" in line and "AA" in line for line in logs)


def _noisy_jpeg(size) -> bytes:
    width, height = size
    pixels = bytes(i % 251 for i in range(width * height * 3))
    buf = BytesIO()
    Image.frombytes("RGB", size, pixels).save(buf, "JPEG")
    return buf.getvalue()


def test_truncated_image_body_is_a_decode_failure(tmp_path):
    body = _noisy_jpeg((64, 48))
    truncated = body[:int(len(body) * 0.97)]

    class Truncated(FakeSession):
        def get(self, url, timeout=None):
            return FakeResp(truncated)

    core = _core(tmp_path, Truncated())

    assert core._fetch_and_persist("AA") is None
    assert core.counter.value == 0
    assert core.get_stats()["failed"] == 1
    assert list((tmp_path / "Download").iterdir()) == []


def test_failed_save_removes_part_file(tmp_path, monkeypatch):
    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(imgcrawl_core.os, "replace", broken_replace)
    core = _core(tmp_path, FakeSession(found={"AA"}))

    assert core._fetch_and_persist("AA") is None
    assert core.get_stats()["failed"] == 1
    assert list((tmp_path / "Download").iterdir()) == []


def test_http_error_status_is_failure(tmp_path):
    class NotFound(FakeSession):
        def get(self, url, timeout=None):
            return FakeResp(b"", status=404)

    core = _core(tmp_path, NotFound())
    assert core._fetch_and_persist("AA") is None
    assert core.get_stats()["failed"] == 1


def test_progress_line_every_nth_save(tmp_path, monkeypatch):
    monkeypatch.setattr(imgcrawl_core, "PROGRESS_EVERY", 2)
    core = _core(tmp_path, FakeSession(found={"AA", "AB", "A0"}))

    for identifier in ("AA", "AB", "A0"):
        core._fetch_and_persist(identifier)

    logs, _ = core.get_logs()
    assert [line for line in logs if "Done:" in line][0].endswith("Done: 2")
    assert not any("Done: 3" in line for line in logs)


def test_fetch_blocks_while_paused(tmp_path):
    session = FakeSession(found={"AA"})
    core = _core(tmp_path, session)
    core.pause()

    result = {}
    worker = threading.Thread(target=lambda: result.setdefault("path", core._fetch_and_persist("AA")))
    worker.start()
    time.sleep(0.3)
    assert session.urls == []

    core.resume()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert session.urls == ["http://i.imgur.com/AA.jpg"]
    assert result["path"].name == "1_AA.jpg"


def test_stop_releases_paused_fetch(tmp_path):
    session = FakeSession()
    core = _core(tmp_path, session)
    core.pause()
    core.stop_event.set()
    assert core._fetch_and_persist("AA") is None
    assert session.urls == []


# ---------------- quota monitor ----------------

def test_check_quota_pauses_when_over(tmp_path):
    core = _core(tmp_path, FakeSession(), quota_mb=1)
    (tmp_path / "Download" / "big.bin").write_bytes(b"\0" * (2 * BYTES_PER_MB))

    assert core._check_quota() is True
    assert core.is_paused()
    logs, _ = core.get_logs()
    assert any("has reached 2MB" in line for line in logs)


def test_check_quota_at_ceiling_does_not_pause(tmp_path):
    core = _core(tmp_path, FakeSession(), quota_mb=1)
    (tmp_path / "Download" / "exact.bin").write_bytes(b"\0" * BYTES_PER_MB)

    assert core._check_quota() is False
    assert not core.is_paused()


def test_quota_monitor_pauses_within_one_interval_and_stays_paused(tmp_path):
    core = _core(tmp_path, FakeSession(), quota_mb=1)
    nested = tmp_path / "Download" / "nested"
    nested.mkdir()
    (nested / "big.bin").write_bytes(b"\0" * (2 * BYTES_PER_MB))

    monitor = threading.Thread(target=core._quota_monitor_loop, args=(0.5,), daemon=True)
    monitor.start()
    try:
        # one 0.5s interval plus scheduling slack
        deadline = time.time() + 0.65
        while not core.is_paused() and time.time() < deadline:
            time.sleep(0.02)
        assert core.is_paused()

        # removing the files does not auto-resume
        (nested / "big.bin").unlink()
        time.sleep(0.7)
        assert core.is_paused()
    finally:
        core.stop_event.set()
        monitor.join(timeout=2)


# ---------------- coordinator ----------------

def test_full_run_visits_every_identifier_once(tmp_path):
    session = FakeSession(found={"A1", "0B", "11"})
    core = _core(tmp_path, session)

    core.start(monitor_interval=0.05)
    try:
        assert core.wait(timeout=10)
    finally:
        core.stop()

    identifiers = sorted(u.rsplit("/", 1)[1][:-4] for u in session.urls)
    assert len(identifiers) == 16
    assert len(set(identifiers)) == 16

    saved = sorted(p.name.split("_", 1)[1] for p in (tmp_path / "Download").iterdir())
    assert saved == ["0B.jpg", "11.jpg", "A1.jpg"]
    counts = sorted(int(p.name.split("_", 1)[0]) for p in (tmp_path / "Download").iterdir())
    assert counts == [1, 2, 3]

    stats = core.get_stats()
    assert stats["checked"] == 16
    assert stats["downloaded"] == 3
    assert stats["placeholders"] == 13
    assert stats["active_lanes"] == 0
    assert stats["lanes"] == 4


def test_lane_dispatches_in_rank_order(tmp_path):
    alphabet = Alphabet("AB01")
    session = FakeSession()
    core = _core(tmp_path, session, max_workers=1, start_string="B1")

    core.start(monitor_interval=0.05)
    try:
        assert core.wait(timeout=10)
    finally:
        core.stop()

    identifiers = [u.rsplit("/", 1)[1][:-4] for u in session.urls]
    assert identifiers == ["B1", "0A", "0B", "00", "01", "1A", "1B", "10", "11"]
    assert [tuple(alphabet.rank(c) for c in i) for i in identifiers] == sorted(
        tuple(alphabet.rank(c) for c in i) for i in identifiers
    )


def test_stop_terminates_lanes(tmp_path):
    core = _core(tmp_path, FakeSession(), search_length=8, max_workers=2)
    core.start(monitor_interval=0.05)
    time.sleep(0.1)
    core.stop()

    assert core.wait(timeout=5)
    assert core.get_stats()["checked"] < 4 ** 7 * 4


def test_get_logs_is_incremental(tmp_path):
    core = _core(tmp_path, FakeSession())
    logs, index = core.get_logs()
    assert logs and index == len(logs)

    core._log("hello", "warning")
    newer, new_index = core.get_logs(index)
    assert len(newer) == 1
    assert newer[0].endswith("[WARNING] hello")
    assert new_index == index + 1


def test_log_file_is_written(tmp_path):
    log_file = tmp_path / "debug.log"
    log_file.write_text("stale\n")
    ImgCrawlCore(output_dir=str(tmp_path / "out"), session=FakeSession(), log_file=str(log_file))

    content = log_file.read_text()
    assert "stale" not in content
    assert "Core Engine Initialized" in content
