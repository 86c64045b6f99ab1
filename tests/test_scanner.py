import threading

from face_checkin.scanner import AutoScanner
from face_checkin.types import Transition


def test_tick_records_attendance(service, alice):
    seen = []
    scanner = AutoScanner(service, lambda: alice, interval_seconds=0.0, stream_id="cam-0", on_outcome=seen.append)

    outcome = scanner.tick()

    assert outcome.event.transition is Transition.ENTRY
    assert seen == [outcome]
    assert scanner.last_outcome is outcome


def test_tick_skips_while_stream_is_busy(service, alice, db):
    scanner = AutoScanner(service, lambda: alice, stream_id="cam-0")
    held = service.start_session("cam-0")

    assert scanner.tick() is None
    assert scanner.skipped == 1
    assert db.latest_for("alice@example.com") is None

    held.run(alice)
    assert scanner.tick() is not None


def test_tick_reports_capture_failures(service, alice):
    scanner = AutoScanner(service, lambda: b"", stream_id="cam-0")

    assert scanner.tick() is None
    assert "no image" in scanner.last_error
    assert not service.is_busy("cam-0")


def test_background_loop_runs_until_stopped(service, alice):
    recognized = threading.Event()
    scanner = AutoScanner(
        service,
        lambda: alice,
        interval_seconds=0.01,
        stream_id="cam-0",
        on_outcome=lambda _outcome: recognized.set(),
    )

    scanner.start()
    try:
        assert recognized.wait(timeout=5.0)
        assert scanner.running
    finally:
        scanner.stop()

    assert not scanner.running
    assert scanner.ticks >= 1
