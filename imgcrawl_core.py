# imgcrawl_core.py
# IMGCRAWL CORE ENGINE
# Version: 1.0.0 |

"""
IMGCRAWL CORE ENGINE
====================
A thread-per-lane crawler that walks the identifier keyspace, probes the image
host for every identifier and keeps whatever is not the "not found" placeholder.

RUNTIME LAYOUT:
- One worker thread per lane, each owning a disjoint set of first characters
- One quota monitor thread pausing downloads when the output grows too large
- Shared PauseGate and DownloadCounter, nothing else crosses lanes
"""

import os
import time
import threading
from io import BytesIO
from pathlib import Path
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from datetime import datetime
from typing import Optional, Dict, List, Tuple, Any

import requests
from PIL import Image

from imgcrawl_keyspace import (
    Alphabet,
    LaneAssignment,
    enumerate_identifiers,
    lane_templates,
    normalize_start,
    partition_keyspace,
)

# =========================================================
# CONSTANTS
# =========================================================

# Remote addressing: BASE_URL + identifier + FILE_EXTENSION
BASE_URL = "http://i.imgur.com/"
FILE_EXTENSION = ".jpg"

# Fetch timeout in seconds, transport defaults are unbounded
CONNECTION_TIMEOUT = 15

# Dimensions (width, height) of the host's "image not found" response
PLACEHOLDER_SIZE = (161, 81)

# Default Configuration
DEFAULT_SEARCH_LENGTH = 5
DEFAULT_MAX_WORKERS = 6
DEFAULT_QUOTA_MB = 1024
DEFAULT_OUTPUT_DIR = "Download"
DEFAULT_LOG_FILE = "imgcrawl_debug.log"

# Recommended identifier length range, others rarely hit anything
RECOMMENDED_LENGTH_RANGE = (4, 8)

# Polling intervals in seconds
PAUSE_POLL_SECONDS = 0.1
QUOTA_POLL_SECONDS = 0.5

# Print progress on every Nth saved image
PROGRESS_EVERY = 25

BYTES_PER_MB = 1024 * 1024


# =========================================================
# SHARED STATE
# =========================================================
class PauseGate:
    """Shared pause flag; every mutation is a locked exchange."""

    def __init__(self):
        self._lock = threading.Lock()
        self._paused = False

    def exchange(self, paused: bool) -> bool:
        """Set the flag and return its previous value."""
        with self._lock:
            previous = self._paused
            self._paused = paused
            return previous

    def pause(self) -> bool:
        """Returns True when this call engaged the pause."""
        return not self.exchange(True)

    def resume(self) -> bool:
        """Returns True when this call released the pause."""
        return self.exchange(False)

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def wait_while_paused(self, stop_event: Optional[threading.Event] = None,
                          poll_interval: float = PAUSE_POLL_SECONDS) -> bool:
        """
        Sleep-poll until the gate opens.

        Returns:
            False if stop_event was set while waiting, True otherwise
        """
        while self.is_paused():
            if stop_event is not None and stop_event.is_set():
                return False
            time.sleep(poll_interval)
        return True


class DownloadCounter:
    """Monotonic counter of persisted images, shared by all lanes."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


def directory_size(root: Path) -> int:
    """Total size in bytes of every file below `root`."""
    total = 0
    for path in Path(root).rglob("*"):
        try:
            if path.is_file():
                total += path.stat().st_size
        except FileNotFoundError:
            # promoted or removed between listing and stat
            continue
    return total


# =========================================================
# IMGCRAWL CORE ENGINE CLASS
# =========================================================
class ImgCrawlCore:
    """
    Orchestrates lanes, the fetch pipeline and the quota monitor.

    The UI layer only talks to start/stop/wait, pause/resume and the polling
    hooks get_stats/get_logs.
    """

    def __init__(self, output_dir: str = DEFAULT_OUTPUT_DIR,
                 search_length: int = DEFAULT_SEARCH_LENGTH,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 start_string: str = "",
                 quota_mb: int = DEFAULT_QUOTA_MB,
                 alphabet: Alphabet = None,
                 session: requests.Session = None,
                 log_file: Optional[str] = DEFAULT_LOG_FILE,
                 pause_gate: PauseGate = None,
                 counter: DownloadCounter = None):
        """
        Initialize the crawler.

        Args:
            output_dir: Directory receiving saved images
            search_length: Identifier length
            max_workers: Ceiling on lane threads
            start_string: Identifier to resume from, may be partial or empty
            quota_mb: Output size in megabytes that triggers an automatic pause
            alphabet: Identifier alphabet (62 alphanumerics by default)
            session: HTTP session, a fresh requests.Session if omitted
            log_file: Debug log path, None disables file logging
            pause_gate: Shared pause flag, created if omitted
            counter: Shared download counter, created if omitted
        """
        if search_length < 1:
            raise ValueError(f"search_length must be positive, got {search_length}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {max_workers}")

        # ===== PATH CONFIGURATION =====
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # ===== KEYSPACE =====
        self.alphabet = alphabet if alphabet is not None else Alphabet()
        self.search_length = search_length
        self.max_workers = max_workers
        self.start_string = start_string
        self.assignments: List[LaneAssignment] = partition_keyspace(
            start_string, search_length, max_workers, self.alphabet
        )

        # ===== QUOTA =====
        self.quota_mb = quota_mb

        # ===== THREADING PRIMITIVES =====
        self.stop_event = threading.Event()
        self.pause_gate = pause_gate if pause_gate is not None else PauseGate()
        self.counter = counter if counter is not None else DownloadCounter()
        self.executor = None
        self.monitor_thread = None
        self.lane_futures = []

        # ===== SESSION =====
        self.session = session if session is not None else requests.Session()

        # ===== STATE TRACKING =====
        self.stats_lock = threading.Lock()
        self.checked = 0
        self.placeholders = 0
        self.failed = 0
        self.active_lanes = 0

        # ===== UI BRIDGE =====
        self.log_lock = threading.Lock()
        self.debug_log = deque(maxlen=50000)
        self.log_count = 0

        self.log_file = Path(log_file) if log_file else None
        if self.log_file and self.log_file.exists():
            self.log_file.unlink()

        self._log("Core Engine Initialized", "info")
        self._log(f"Output Directory: {self.output_dir}", "info")
        self._log(f"Lanes: {len(self.assignments)} | Length: {self.search_length} | "
                  f"Quota: {self.quota_mb}MB", "info")

    @property
    def start_template(self) -> str:
        return "".join(normalize_start(self.start_string, self.search_length))

    def _log(self, message: str, level: str = "info"):
        """
        Thread-safe logging to both debug file and UI event stream.

        Args:
            message: Log message
            level: Log level (info, success, warning, error)
        """
        timestamp = datetime.now().strftime("%H:%M:%S")
        formatted = f"[{timestamp}] [{level.upper()}] {message}"

        with self.log_lock:
            if self.log_file:
                try:
                    with open(self.log_file, 'a', encoding='utf-8') as f:
                        f.write(formatted + "\n")
                except OSError:
                    pass

            self.debug_log.append(formatted)
            self.log_count += 1

    # =========================================================
    # PAUSE CONTROL
    # =========================================================
    def pause(self):
        if self.pause_gate.pause():
            self._log("⏸ Downloading paused", "warning")

    def resume(self):
        if self.pause_gate.resume():
            self._log("▶ Downloading resumed", "info")

    def is_paused(self) -> bool:
        return self.pause_gate.is_paused()

    # =========================================================
    # FETCH-AND-PERSIST PIPELINE
    # =========================================================
    def image_url(self, identifier: str) -> str:
        return f"{BASE_URL}{identifier}{FILE_EXTENSION}"

    def _fetch_and_persist(self, identifier: str) -> Optional[Path]:
        """
        Probe one identifier and save the image if it is real.

        Args:
            identifier: Complete identifier

        Returns:
            Path of the saved file, None when nothing was saved
        """
        if not self.pause_gate.wait_while_paused(self.stop_event):
            return None

        with self.stats_lock:
            self.checked += 1

        part_path = None
        try:
            response = self.session.get(self.image_url(identifier), timeout=CONNECTION_TIMEOUT)
            response.raise_for_status()
            content = response.content

            with Image.open(BytesIO(content)) as image:
                # open() only parses the header, load() decodes the pixel data
                image.load()
                size = image.size

            if size == PLACEHOLDER_SIZE:
                with self.stats_lock:
                    self.placeholders += 1
                return None

            count = self.counter.increment()
            final_path = self.output_dir / f"{count}_{identifier}{FILE_EXTENSION}"
            part_path = Path(str(final_path) + ".part")

            part_path.write_bytes(content)
            os.replace(str(part_path), str(final_path))

        except Exception as e:
            if part_path is not None:
                part_path.unlink(missing_ok=True)
            self._log(f"✗ Failed: {identifier} - {e}", "error")
            with self.stats_lock:
                self.failed += 1
            return None

        if count % PROGRESS_EVERY == 0:
            self._log(f"Done: {count}", "success")

        return final_path

    # =========================================================
    # DISK-QUOTA MONITOR
    # =========================================================
    def _check_quota(self) -> bool:
        """
        Measure the output directory once, pausing when over quota.

        Returns:
            True if the quota is exceeded
        """
        megabytes = directory_size(self.output_dir) // BYTES_PER_MB
        if megabytes <= self.quota_mb:
            return False

        if self.pause_gate.pause():
            self._log(f"Download directory has reached {megabytes}MB! Downloading has been paused, "
                      f"please clean the directory and use the 'resume' command!", "warning")
        return True

    def _quota_monitor_loop(self, interval: float = QUOTA_POLL_SECONDS):
        while not self.stop_event.wait(interval):
            if self.pause_gate.is_paused():
                continue
            try:
                self._check_quota()
            except OSError as e:
                self._log(f"Quota check failed: {e}", "error")

    # =========================================================
    # WORKER COORDINATOR
    # =========================================================
    def _lane_loop(self, assignment: LaneAssignment):
        """
        Drive one lane through every template it owns.

        Args:
            assignment: Lane produced by partition_keyspace
        """
        with self.stats_lock:
            self.active_lanes += 1
        self._log(f"🚀 Lane {assignment.lane} starting at {assignment.start_string}", "info")

        try:
            for template in lane_templates(assignment, self.alphabet):
                for identifier in enumerate_identifiers(template, self.alphabet):
                    if self.stop_event.is_set():
                        self._log(f"Lane {assignment.lane} stopped", "info")
                        return
                    self._fetch_and_persist(identifier)
            self._log(f"🏁 Lane {assignment.lane} exhausted", "success")
        finally:
            with self.stats_lock:
                self.active_lanes -= 1

    def start(self, monitor_interval: float = QUOTA_POLL_SECONDS):
        """Start the quota monitor and one thread per lane."""
        self.stop_event.clear()

        self.monitor_thread = threading.Thread(
            target=self._quota_monitor_loop,
            args=(monitor_interval,),
            daemon=True
        )
        self.monitor_thread.start()

        self.executor = ThreadPoolExecutor(max_workers=len(self.assignments),
                                           thread_name_prefix="imgcrawl-lane")
        self.lane_futures = [
            self.executor.submit(self._lane_loop, assignment)
            for assignment in self.assignments
        ]

        self._log(f"Starting at {self.start_template} with {len(self.assignments)} threads", "success")

    def wait(self, timeout: float = None) -> bool:
        """
        Block until every lane has finished.

        Returns:
            True if all lanes finished within the timeout
        """
        if not self.lane_futures:
            return True
        _, not_done = wait_futures(self.lane_futures, timeout=timeout)
        for future in self.lane_futures:
            if future.done() and future.exception() is not None:
                self._log(f"Lane crashed: {future.exception()}", "error")
        return not not_done

    def stop(self):
        """Stop lanes and the monitor."""
        self.stop_event.set()

        if self.monitor_thread and self.monitor_thread.is_alive():
            self.monitor_thread.join(timeout=2)

        if self.executor:
            self.executor.shutdown(wait=False, cancel_futures=True)
            self.executor = None

        self._log("Engine stopped", "info")

    # =========================================================
    # UI BRIDGE
    # =========================================================
    def get_stats(self) -> Dict[str, Any]:
        """
        Get current engine statistics (polling hook).

        Returns:
            Dictionary containing all telemetry data
        """
        with self.stats_lock:
            return {
                "downloaded": self.counter.value,
                "checked": self.checked,
                "placeholders": self.placeholders,
                "failed": self.failed,
                "paused": self.pause_gate.is_paused(),
                "active_lanes": self.active_lanes,
                "lanes": len(self.assignments),
                "heartbeat": time.time(),
            }

    def get_logs(self, from_index: int = 0) -> Tuple[List[str], int]:
        """
        Get log entries from a specific index.

        Args:
            from_index: Index returned by the previous call

        Returns:
            Tuple of (log_lines, new_index)
        """
        with self.log_lock:
            oldest = self.log_count - len(self.debug_log)
            skip = max(from_index - oldest, 0)
            logs = list(self.debug_log)[skip:]
            return logs, self.log_count
