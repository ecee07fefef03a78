import hashlib
import logging
import threading

import pytest

from binsnap.forensics import process_binary_snapshot as pbs
from binsnap.forensics.process_binary_snapshot import HashLedger, LogCapture, LogCaptureHandler


def test_ledger_line_for_known_bytes():
    ledger = HashLedger()
    digest = ledger.record(b"ABC", "/usr/bin/abc")
    expected = hashlib.sha1(b"ABC").hexdigest()
    assert digest == expected
    assert len(digest) == 40
    assert ledger.render() == f"{expected};/usr/bin/abc\n".encode("utf-8")


def test_ledger_preserves_insertion_order():
    ledger = HashLedger()
    names = ["/z/last", "/a/first", "/m/middle"]
    for i, name in enumerate(names):
        ledger.record(bytes([i]) * 10, name)
    lines = ledger.render().decode("utf-8").splitlines()
    assert [line.split(";", 1)[1] for line in lines] == names
    assert len(ledger) == 3


def test_ledger_digest_is_pure_function_of_content():
    a, b = HashLedger(), HashLedger()
    a.record(b"same payload", "/one")
    b.record(b"same payload", "/two")
    assert a.entries[0][0] == b.entries[0][0]


def test_empty_ledger_renders_empty_bytes():
    assert HashLedger().render() == b""


def test_ledger_keeps_semicolons_and_unicode_in_names():
    ledger = HashLedger()
    ledger.record(b"x", "/opt/ünï;code/bin")
    line = ledger.render().decode("utf-8")
    digest, name = line.rstrip("\n").split(";", 1)
    assert name == "/opt/ünï;code/bin"
    assert digest == hashlib.sha1(b"x").hexdigest()


def test_log_capture_concurrent_appends():
    capture = LogCapture()
    line = b"0123456789\n"

    def worker():
        for _ in range(500):
            capture.append(line)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    data = capture.snapshot()
    assert len(data) == len(line) * 500 * 8
    assert len(capture) == len(data)
    assert set(data.splitlines()) == {b"0123456789"}


def test_capture_handler_writes_formatted_lines():
    capture = LogCapture()
    handler = LogCaptureHandler(capture)
    handler.setFormatter(logging.Formatter(pbs.CAPTURE_FORMAT))
    log = logging.getLogger("binsnap-test-capture")
    log.propagate = False
    log.setLevel(logging.DEBUG)
    log.addHandler(handler)
    try:
        log.debug("debug detail")
        log.info("adding %s", "/usr/bin/ls")
        log.error("error while opening '%s': %s", "/x", "denied")
    finally:
        log.removeHandler(handler)

    text = capture.snapshot().decode("utf-8")
    lines = text.splitlines()
    assert len(lines) == 3
    assert "DEBUG" in lines[0] and "debug detail" in lines[0]
    assert "INFO" in lines[1] and "adding /usr/bin/ls" in lines[1]
    assert "ERROR" in lines[2] and "test_forensics_002.py" in lines[2]


def test_setup_logging_replaces_previous_handlers():
    first, second = LogCapture(), LogCapture()
    pbs.setup_logging(first)
    handlers = pbs.setup_logging(second)
    try:
        assert len(pbs.logger.handlers) == 2
        assert handlers[0].level == logging.INFO
        pbs.logger.debug("only in capture")
        assert b"only in capture" in second.snapshot()
        assert b"only in capture" not in first.snapshot()
    finally:
        for h in handlers:
            pbs.logger.removeHandler(h)
