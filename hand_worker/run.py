"""
Command line entry point.

    python -m hand_worker.run serve
    python -m hand_worker.run upload VIDEO [VIDEO ...] --tournament T --event E
    python -m hand_worker.run analyze STREAM_ID
    python -m hand_worker.run sync STREAM_ID
    python -m hand_worker.run status UPLOAD_ID
    python -m hand_worker.run reset-upload UPLOAD_ID
"""

import os
import sys
import json
import uuid
import signal
import logging
import argparse

from .models import UploadRequest
from .pipeline.util import clean_filename
from .service import WorkerService, signal_handler
from .logging_setup import log_exception

logger = logging.getLogger("hand_worker")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hand_worker", description="Hand history upload and analysis worker")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="poll for analysis jobs (and serve HTTP if enabled)")

    upload = sub.add_parser("upload", help="upload video files to blob storage")
    upload.add_argument("files", nargs="+")
    upload.add_argument("--tournament", required=True, help="tournament id")
    upload.add_argument("--event", required=True, help="event id")

    analyze = sub.add_parser("analyze", help="create and run an analysis job now")
    analyze.add_argument("stream_id")

    sync = sub.add_parser("sync", help="recompute a stream's hand count")
    sync.add_argument("stream_id")

    status = sub.add_parser("status", help="show upload status")
    status.add_argument("upload_id")

    reset = sub.add_parser("reset-upload", help="reset a stale upload")
    reset.add_argument("upload_id")

    return parser


def _upload_requests(files, tournament_id: str, event_id: str):
    requests = []
    for path in files:
        stream_id = str(uuid.uuid4())
        name = clean_filename(os.path.basename(path))
        requests.append(UploadRequest(
            upload_id=stream_id,
            file_path=path,
            destination=f"{tournament_id}/{event_id}/{stream_id}/{name}",
            stream_id=stream_id,
            tournament_id=tournament_id,
            event_id=event_id,
        ))
    return requests


def run_command(worker: WorkerService, args: argparse.Namespace) -> int:
    if args.command == "serve":
        worker.start()
        return 0

    if args.command == "upload":
        records = worker.upload_engine.upload_many(_upload_requests(args.files, args.tournament, args.event))
        for record in records:
            print(json.dumps(record.to_status_dict()))
        return 0 if all(r.status == "uploaded" for r in records) else 1

    if args.command == "analyze":
        job = worker.orchestrator.create_job(args.stream_id)
        job = worker.orchestrator.execute_pipeline(job)
        print(json.dumps(job.to_status_dict()))
        return 0 if job.status == "completed" else 1

    if args.command == "sync":
        print(json.dumps(worker.orchestrator.sync_stream_hands(args.stream_id).to_dict()))
        return 0

    if args.command == "status":
        print(json.dumps(worker.tracker.get_status(args.upload_id).to_status_dict()))
        return 0

    if args.command == "reset-upload":
        print(json.dumps(worker.tracker.reset_stale(args.upload_id).to_status_dict()))
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv=None):
    """Main entry point"""
    args = build_parser().parse_args(argv)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    worker = WorkerService()
    try:
        worker.initialize(start_http=args.command == "serve")
        code = run_command(worker, args)
    except Exception as e:
        log_exception(logger, f"Command {args.command} failed: {str(e)}")
        code = 1
    finally:
        worker.stop()
    sys.exit(code)


if __name__ == "__main__":
    main()
