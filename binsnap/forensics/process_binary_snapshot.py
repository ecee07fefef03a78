#!/usr/bin/env python3
"""
Process Binary Snapshotter

Ethical use only:
- This tool is intended for authorized forensic inventory and incident-response triage.
- Obtain explicit authorization before collecting binaries from a host you do not own.

Capabilities:
- Enumerates the live process table and resolves the executable behind every process.
- Copies each distinct executable into a single store-only zip archive, preserving
  executable permissions on the entries.
- Records a SHA-1 ledger (sha1_hashes.csv) cross-referencing every archived entry.
- Captures the full run log in memory and appends it to the archive (messages.log).
"""
import argparse
import hashlib
import logging
import os
import re
import stat
import sys
import threading
import time
import zipfile
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, Iterator, List, Optional, Tuple

import psutil

TOOL_VERSION = "1.0.0"

DIGEST_ALGORITHM = "sha1"
LOG_ENTRY_NAME = "messages.log"
LEDGER_ENTRY_NAME = "sha1_hashes.csv"
ENTRY_MODE = 0o755

CONSOLE_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
CAPTURE_FORMAT = "[%(asctime)s] %(levelname)s [%(name)s] %(filename)s:%(lineno)d: %(message)s"

logger = logging.getLogger("ProcessBinarySnapshot")


class SnapshotError(Exception):
    pass


class ArchiveCreationError(SnapshotError):
    pass


class ArchiveWriteError(SnapshotError):
    pass


# ----------------------- Log Capture -----------------------

class LogCapture:
    """Append-only byte sink shared by the logging handler and the archive writer."""

    def __init__(self):
        self._buf = bytearray()
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        with self._lock:
            self._buf.extend(data)

    def snapshot(self) -> bytes:
        with self._lock:
            return bytes(self._buf)

    def __len__(self) -> int:
        with self._lock:
            return len(self._buf)


class LogCaptureHandler(logging.Handler):
    def __init__(self, capture: LogCapture, level: int = logging.DEBUG):
        super().__init__(level)
        self.capture = capture

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record) + "\n"
            self.capture.append(line.encode("utf-8", errors="replace"))
        except Exception:
            self.handleError(record)


def setup_logging(capture: LogCapture, console_level: int = logging.INFO) -> List[logging.Handler]:
    for h in list(logger.handlers):
        logger.removeHandler(h)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    captured = LogCaptureHandler(capture)
    captured.setFormatter(logging.Formatter(CAPTURE_FORMAT))
    logger.addHandler(console)
    logger.addHandler(captured)
    logger.setLevel(logging.DEBUG)
    return [console, captured]


# ----------------------- Process Scanner -----------------------

@dataclass
class ProcessInfo:
    pid: int
    name: str
    exe: Optional[str]


def iter_processes() -> Iterator[ProcessInfo]:
    # exe is None when access is denied or the process has no backing binary
    for p in psutil.process_iter(attrs=["pid", "name", "exe"], ad_value=None):
        info = p.info
        yield ProcessInfo(pid=info.get("pid"), name=info.get("name") or "", exe=info.get("exe"))


class ProcessScanner:
    def __init__(self, process_source: Optional[Callable[[], Iterable[ProcessInfo]]] = None):
        self.process_source = process_source or iter_processes

    def scan(self) -> FrozenSet[str]:
        """
        Return the set of distinct executable paths backing running processes.
        Processes whose executable cannot be resolved to an existing file system entry
        are skipped with a warning.
        """
        binaries = set()
        for proc in self.process_source():
            if not proc.exe or not os.path.exists(proc.exe):
                logger.warning("process %s(%s) refers to invalid program name, omitting...", proc.name, proc.pid)
                continue
            binaries.add(proc.exe)
        logger.debug("Discovered %d distinct process binaries", len(binaries))
        return frozenset(binaries)


# ----------------------- Hash Ledger -----------------------

class HashLedger:
    def __init__(self, algorithm: str = DIGEST_ALGORITHM):
        self.algorithm = algorithm
        self.entries: List[Tuple[str, str]] = []

    def record(self, data: bytes, display_name: str) -> str:
        digest = hashlib.new(self.algorithm, data).hexdigest()
        self.entries.append((digest, display_name))
        return digest

    def render(self) -> bytes:
        return "".join(f"{digest};{name}\n" for digest, name in self.entries).encode("utf-8")

    def __len__(self) -> int:
        return len(self.entries)


# ----------------------- Path Normalization -----------------------

_DRIVE_PREFIX = re.compile(r"^([A-Za-z]):")


def normalize_entry_name(path: str, windows: Optional[bool] = None) -> str:
    """
    Convert a file system path into an archive entry name.

    On Windows-style paths backslashes become forward slashes and the colon of a
    leading drive prefix is dropped, so ``C:\\x`` becomes ``C/x``, a relative name that
    stays distinct per drive. POSIX paths are returned unchanged. Applying
    the function to its own output yields the same value.
    """
    if windows is None:
        windows = os.name == "nt"
    if not windows:
        return path
    return _DRIVE_PREFIX.sub(r"\1", path.replace("\\", "/"), count=1)


# ----------------------- Archive Writer -----------------------

def _entry_info(name: str) -> zipfile.ZipInfo:
    zi = zipfile.ZipInfo(name, date_time=time.localtime(time.time())[:6])
    zi.compress_type = zipfile.ZIP_STORED
    zi.create_system = 3
    zi.external_attr = (stat.S_IFREG | ENTRY_MODE) << 16
    return zi


class ArchiveWriter:
    def __init__(self, destination: str, fh, zf: zipfile.ZipFile, ledger: HashLedger, windows: Optional[bool] = None):
        self.destination = destination
        self.ledger = ledger
        self.windows = windows
        self._fh = fh
        self._zip = zf
        self._entries: List[str] = []

    @classmethod
    def create(cls, destination: str, ledger: HashLedger, windows: Optional[bool] = None) -> "ArchiveWriter":
        try:
            fh = open(destination, "wb")
        except OSError as e:
            raise ArchiveCreationError(f"cannot create archive '{destination}': {e}") from e
        try:
            zf = zipfile.ZipFile(fh, "w", compression=zipfile.ZIP_STORED, allowZip64=True)
        except Exception as e:
            fh.close()
            raise ArchiveCreationError(f"cannot create archive '{destination}': {e}") from e
        return cls(destination, fh, zf, ledger, windows=windows)

    @property
    def entries(self) -> List[str]:
        return list(self._entries)

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def _write_entry(self, name: str, data: bytes) -> None:
        try:
            self._zip.writestr(_entry_info(name), data)
        except (OSError, ValueError, zipfile.LargeZipFile) as e:
            raise ArchiveWriteError(f"cannot write entry '{name}': {e}") from e
        self._entries.append(name)

    def add_binary(self, path: str) -> Optional[str]:
        """
        Read a binary once and hand the same bytes to the hash ledger and the archive.
        Returns the entry name, or None when the binary could not be read.
        """
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            logger.error("error while opening '%s': %s", path, e)
            return None

        name = normalize_entry_name(path, windows=self.windows)
        self.ledger.record(data, name)
        logger.info("adding %s", name)
        self._write_entry(name, data)
        return name

    def finalize(self, log_bytes: bytes, ledger_bytes: bytes) -> None:
        self._write_entry(LOG_ENTRY_NAME, log_bytes)
        self._write_entry(LEDGER_ENTRY_NAME, ledger_bytes)
        try:
            self._zip.close()
            self._fh.close()
        except (OSError, ValueError) as e:
            raise ArchiveWriteError(f"cannot finalize archive '{self.destination}': {e}") from e

    def abort(self) -> None:
        # Best-effort release of the destination; whatever reached the disk stays there.
        for closer in (self._zip.close, self._fh.close):
            try:
                closer()
            except (OSError, ValueError) as e:
                logger.debug("Closing '%s' after failure raised: %s", self.destination, e)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.abort()


# ----------------------- Orchestration -----------------------

@dataclass
class SnapshotResult:
    destination: str
    binaries: int = 0
    archived: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def snapshot(destination: str, capture: LogCapture, scanner: Optional[ProcessScanner] = None,
             windows: Optional[bool] = None) -> SnapshotResult:
    """
    Scan -> archive every binary -> append captured log and hash ledger.
    Raises SnapshotError on any fatal archive failure.
    """
    logger.info("Process Binary Snapshotter %s writing %s", TOOL_VERSION, destination)
    scanner = scanner or ProcessScanner()
    binaries = scanner.scan()
    result = SnapshotResult(destination=str(destination), binaries=len(binaries))

    ledger = HashLedger()
    with ArchiveWriter.create(str(destination), ledger, windows=windows) as writer:
        for path in sorted(binaries):
            name = writer.add_binary(path)
            if name is None:
                result.skipped.append(path)
            else:
                result.archived.append(name)
        logger.info(
            "Archived %d of %d binaries (%d skipped) into %s",
            len(result.archived), result.binaries, len(result.skipped), destination,
        )
        writer.finalize(capture.snapshot(), ledger.render())
    return result


def main(argv: Optional[List[str]] = None) -> int:
    capture = LogCapture()
    setup_logging(capture)

    parser = argparse.ArgumentParser(description="compresses all process binaries into a zip file")
    parser.add_argument("zipfile", help="name of the destination zip file")
    args = parser.parse_args(argv)

    try:
        snapshot(args.zipfile, capture)
    except SnapshotError as e:
        logger.error("failed: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
