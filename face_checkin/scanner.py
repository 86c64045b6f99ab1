import threading
from typing import Callable, Optional

from .config import AUTO_SCAN_INTERVAL_SECONDS
from .exceptions import AttendanceError, SessionBusy
from .logger import setup_logger
from .recognition_service import DEFAULT_STREAM, Capture, RecognitionOutcome, RecognitionService


class AutoScanner:
    """Periodically runs a recognition session on one capture stream.

    A tick is skipped while the stream already has a session in flight, so
    scans never overlap a manual or a previous automatic recognition.
    """

    def __init__(
        self,
        service: RecognitionService,
        capture: Capture,
        interval_seconds: float = AUTO_SCAN_INTERVAL_SECONDS,
        stream_id: str = DEFAULT_STREAM,
        on_outcome: Optional[Callable[[RecognitionOutcome], None]] = None,
    ):
        self.service = service
        self.capture = capture
        self.interval_seconds = max(0.0, interval_seconds)
        self.stream_id = stream_id
        self.on_outcome = on_outcome
        self.logger = setup_logger(self.__class__.__name__)

        self.stop_event = threading.Event()
        self.worker: Optional[threading.Thread] = None
        self.last_outcome: Optional[RecognitionOutcome] = None
        self.last_error: Optional[str] = None
        self.ticks = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self.stop_event.clear()
        self.worker = threading.Thread(target=self._loop, name=f"auto-scan-{self.stream_id}", daemon=True)
        self.worker.start()
        self.logger.info("Auto scan started on %s every %.1fs", self.stream_id, self.interval_seconds)

    def stop(self, timeout: float = 3.0) -> None:
        self.stop_event.set()
        if self.worker is not None and self.worker.is_alive():
            self.worker.join(timeout=timeout)
        self.worker = None

    def tick(self) -> Optional[RecognitionOutcome]:
        """Run one scan now; returns None when skipped or failed."""
        self.ticks += 1
        if self.service.is_busy(self.stream_id):
            self.skipped += 1
            return None

        try:
            outcome = self.service.recognize(self.capture, stream_id=self.stream_id)
        except SessionBusy:
            self.skipped += 1
            return None
        except AttendanceError as exc:
            self.last_error = str(exc)
            self.logger.warning("Auto scan on %s failed (%s): %s", self.stream_id, exc.reason, exc)
            return None

        self.last_error = None
        self.last_outcome = outcome
        if self.on_outcome is not None:
            self.on_outcome(outcome)
        return outcome

    def _loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.tick()
            except Exception as exc:
                self.last_error = f"Auto scan crashed: {exc}"
                self.logger.exception("Auto scan tick failed on %s", self.stream_id)
            if self.stop_event.wait(self.interval_seconds):
                break
