import argparse
import sys
import time
from datetime import date
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from face_checkin.attendance_service import AttendanceService
from face_checkin.config import AUTO_SCAN_INTERVAL_SECONDS, CAMERA_INDEX, DB_PATH, REGISTRATION_SAMPLES, ThresholdPolicy
from face_checkin.database import AttendanceDatabase
from face_checkin.exceptions import AttendanceError, FaceEngineError
from face_checkin.logger import setup_logger
from face_checkin.recognition_service import RecognitionOutcome, RecognitionService
from face_checkin.registration_service import EnrollmentRegistrar


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition check-in and check-out")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="sqlite database path")

    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add-identity", help="Add a person without enrolling a face yet")
    add.add_argument("--id", required=True, dest="identity_key", help="Identity key (e.g. e-mail)")
    add.add_argument("--name", required=True, help="Display name")

    enroll = subparsers.add_parser("enroll", help="Enroll or re-enroll a face reference")
    enroll.add_argument("--id", required=True, dest="identity_key", help="Identity key")
    enroll.add_argument("--name", default=None, help="Display name (defaults to the stored one)")
    source = enroll.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", type=Path, nargs="+", help="One or more face images")
    source.add_argument("--embedding", type=Path, help="Precomputed embedding saved with numpy.save")
    source.add_argument("--camera", type=int, help="Capture samples from this webcam index")
    enroll.add_argument("--samples", type=int, default=REGISTRATION_SAMPLES, help="Webcam samples to average")
    enroll.add_argument("--reenroll", action="store_true", help="Replace an existing reference")

    recognize = subparsers.add_parser("recognize", help="Run one recognition session")
    target = recognize.add_mutually_exclusive_group(required=True)
    target.add_argument("--image", type=Path, help="Face image to recognize")
    target.add_argument("--camera", type=int, help="Capture from this webcam index")

    scan = subparsers.add_parser("scan", help="Continuously scan a webcam and record attendance")
    scan.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")
    scan.add_argument("--interval", type=float, default=AUTO_SCAN_INTERVAL_SECONDS, help="Seconds between scans")

    web = subparsers.add_parser("web", help="Launch the HTTP API")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")
    web.add_argument("--no-scan", action="store_true", help="Disable the webcam auto scan")

    list_cmd = subparsers.add_parser("list-identities", help="List identities, enrolled or pending")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    report = subparsers.add_parser("report", help="Print attendance events and a daily summary")
    report.add_argument("--from", dest="start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD)")
    report.add_argument("--to", dest="end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD)")

    delete = subparsers.add_parser("delete", help="Delete an identity and its attendance history")
    delete.add_argument("--id", required=True, dest="identity_key", help="Identity key")
    delete.add_argument("--yes", action="store_true", help="Confirm the deletion")

    return parser


def _print_outcome(outcome: RecognitionOutcome) -> None:
    match = outcome.match
    if outcome.recognized:
        event = outcome.event
        print(
            f"{event.transition.value.upper()}: {match.identity.display_name} ({match.identity_key}) "
            f"at {event.timestamp:%Y-%m-%d %H:%M:%S} [score={match.score:.3f}, tier={match.tier.value}]"
        )
    else:
        print(f"Not recognized: {match.reason} [score={match.score:.3f}, margin={match.margin:.3f}]")


def _print_recognized(outcome: RecognitionOutcome) -> None:
    if outcome.recognized:
        _print_outcome(outcome)


def _capture_samples(camera_index: int, count: int, extractor) -> List[np.ndarray]:
    from face_checkin.camera import CameraStream

    samples: List[np.ndarray] = []
    with CameraStream(camera_index) as camera:
        attempts = 0
        while len(samples) < count and attempts < count * 10:
            attempts += 1
            try:
                samples.append(extractor.extract(camera.capture_jpeg()))
                print(f"Captured sample {len(samples)}/{count}")
            except FaceEngineError as exc:
                print(f"Sample skipped: {exc}")
            time.sleep(0.2)
    return samples


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = setup_logger("main")

    try:
        policy = ThresholdPolicy.from_env()

        if args.command == "web":
            import uvicorn

            from face_checkin.web_app import build_web_app

            app = build_web_app(camera_index=args.camera, auto_scan=not args.no_scan)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        db = AttendanceDatabase(args.db)
        registrar = EnrollmentRegistrar(db, policy=policy)

        if args.command == "add-identity":
            identity = registrar.add_identity(args.identity_key, args.name)
            print(f"Added {identity.identity_key} ({identity.display_name}); enroll a face next.")
            return 0

        if args.command == "enroll":
            if args.embedding is not None:
                identity = registrar.register(
                    args.identity_key,
                    np.load(args.embedding),
                    is_reenrollment=args.reenroll,
                    display_name=args.name,
                )
            else:
                from face_checkin.face_engine import load_extractor

                extractor = load_extractor()
                if args.image:
                    samples = [extractor.extract(path.read_bytes()) for path in args.image]
                else:
                    samples = _capture_samples(args.camera, max(1, args.samples), extractor)
                identity = registrar.register_samples(
                    args.identity_key,
                    samples,
                    is_reenrollment=args.reenroll,
                    display_name=args.name,
                )
            print(f"Enrollment successful for {identity.identity_key} ({identity.display_name}).")
            return 0

        if args.command == "list-identities":
            records = db.list_identities()
            if not records:
                print("No identities registered.")
                return 0

            print(f"{'Identity':<32} {'Enrolled':<9} {'Name'}")
            print("-" * 72)
            for record in records[: args.limit]:
                print(f"{record.identity_key:<32} {'yes' if record.enrolled else 'no':<9} {record.display_name}")
            return 0

        if args.command == "report":
            reports = AttendanceService(db, policy=policy)
            start = args.start or date.today()
            end = args.end or start
            events = reports.events_between(start, end)
            for event in events:
                print(f"{event.timestamp:%Y-%m-%d %H:%M:%S}  {event.transition.value:<5}  {event.identity_key}")
            summary = reports.daily_summary(end)
            print(
                f"{len(events)} event(s). {summary['date']}: {summary['entries']} entries, "
                f"{summary['exits']} exits, {summary['enrolled']}/{summary['identities']} enrolled."
            )
            return 0

        if args.command == "delete":
            registrar.remove(args.identity_key, confirm=args.yes)
            print(f"Deleted {args.identity_key} and its attendance history.")
            return 0

        from face_checkin.face_engine import load_extractor

        service = RecognitionService(db, load_extractor(), policy=policy)

        if args.command == "recognize":
            if args.image is not None:
                outcome = service.recognize(args.image.read_bytes(), capture_ref=str(args.image))
            else:
                from face_checkin.camera import CameraStream

                with CameraStream(args.camera) as camera:
                    outcome = service.recognize(camera.capture_jpeg, stream_id=camera.stream_id)
            _print_outcome(outcome)
            return 0 if outcome.recognized else 2

        if args.command == "scan":
            from face_checkin.camera import CameraStream
            from face_checkin.scanner import AutoScanner

            with CameraStream(args.camera) as camera:
                scanner = AutoScanner(
                    service,
                    camera.capture_jpeg,
                    interval_seconds=args.interval,
                    stream_id=camera.stream_id,
                    on_outcome=_print_recognized,
                )
                print("Scanning. Press Ctrl+C to stop.")
                scanner.start()
                try:
                    while scanner.running:
                        time.sleep(0.5)
                finally:
                    scanner.stop()
            print("Scan stopped.")
            return 0

    except AttendanceError as exc:
        logger.error("Application error (%s): %s", exc.reason, exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
