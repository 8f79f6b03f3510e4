import argparse
import sys

from pydantic import ValidationError

from . import config as config_lib
from . import pipeline
from .encoders import EncoderNegotiator
from .errors import PipelineError
from .ffmpeg_runner import get_ffmpeg_exe
from .log import configure_logging
from .producer import purge_artifacts, submit_upload


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", "-c", type=str, help="Extra YAML config file")
    parser.add_argument(
        "--queue-backend", choices=["redis", "sqlite"], help="Override queue backend"
    )
    parser.add_argument(
        "--storage-backend", choices=["s3", "local"], help="Override storage backend"
    )
    parser.add_argument("--log-level", type=str, help="Log level (DEBUG, INFO, ...)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vod-pipeline", description="HLS adaptive streaming transcoding pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run a transcoding worker")
    _add_common_options(worker_parser)
    worker_parser.add_argument("--encoder", type=str, help="Force encoder (skip probing)")
    worker_parser.add_argument(
        "--parallel", type=int, help="Renditions encoded concurrently per job"
    )
    worker_parser.add_argument("--work-dir", type=str, help="Root for per-job work dirs")
    worker_parser.add_argument("--max-jobs", type=int, help="Exit after N jobs")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Upload a raw video and queue it")
    _add_common_options(submit_parser)
    submit_parser.add_argument("movie_id", type=int, help="Catalog movie id")
    submit_parser.add_argument("file", type=str, help="Raw video file")
    submit_parser.add_argument(
        "--no-progress", action="store_true", help="Don't draw an upload progress bar"
    )

    # STATUS
    status_parser = subparsers.add_parser("status", help="Show one movie's processing record")
    _add_common_options(status_parser)
    status_parser.add_argument("movie_id", type=int, help="Catalog movie id")

    # RECORDS
    records_parser = subparsers.add_parser("records", help="List processing records")
    _add_common_options(records_parser)
    records_parser.add_argument(
        "--status",
        choices=["PENDING", "PROCESSING", "READY", "FAILED"],
        help="Only records in this state",
    )

    # PURGE
    purge_parser = subparsers.add_parser("purge", help="Delete a movie's published renditions")
    _add_common_options(purge_parser)
    purge_parser.add_argument("movie_id", type=int, help="Catalog movie id")
    purge_parser.add_argument("--raw", action="store_true", help="Also delete the raw upload")

    # CHECK
    check_parser = subparsers.add_parser("check", help="Verify ffmpeg and encoder availability")
    _add_common_options(check_parser)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        conf = config_lib.resolve_config(cli_dict, config_path=cli_dict.get("config"))
    except (ValidationError, FileNotFoundError) as e:
        print(f"❌ Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(conf.worker.log_level, conf.worker.log_format)

    try:
        if args.command == "worker":
            stats = pipeline.run_worker(conf, max_jobs=args.max_jobs)
            print("\n" + "=" * 60)
            print("WORKER SUMMARY")
            print("=" * 60)
            print(f"Processed:            {stats.processed}")
            print(f"Ready:                {stats.succeeded}")
            print(f"Failed:               {stats.failed}")
            print(f"Record update errors: {stats.record_update_failures}")
            print(f"Queue errors:         {stats.consume_errors}")
            print("=" * 60)

        elif args.command == "submit":
            storage = pipeline.build_storage(conf)
            queue = pipeline.build_queue(conf)
            records = pipeline.build_record_store(conf)
            try:
                job = submit_upload(
                    storage, queue, records,
                    movie_id=args.movie_id,
                    file_path=args.file,
                    raw_bucket=conf.storage.bucket_raw,
                    show_progress=not args.no_progress,
                )
            finally:
                queue.close()
            print(f"✅ Queued movie {job.movie_id} ({job.raw_file_path})")

        elif args.command == "status":
            records = pipeline.build_record_store(conf)
            record = records.find_record_by_movie_id(args.movie_id)
            if record is None:
                print(f"No processing record for movie {args.movie_id}")
                sys.exit(1)
            print(f"Movie:        {record.movie_id}")
            print(f"Status:       {record.upload_status.value}")
            print(f"Raw file:     {record.raw_file_path or '-'}")
            print(f"Playlist:     {record.hls_playlist_url or '-'}")
            print(f"Error:        {record.error_message or '-'}")
            print(f"Uploaded at:  {record.uploaded_at.isoformat()}")
            print(f"Processed at: {record.processed_at.isoformat() if record.processed_at else '-'}")
            transitions = records.get_transitions(args.movie_id)
            if transitions:
                print("\nTransitions:")
                for t in transitions:
                    print(
                        f"  {t.timestamp.isoformat()}  {t.from_state or '-':<10} → {t.to_state:<10}"
                        f"  {t.worker_id or ''}"
                    )

        elif args.command == "records":
            records = pipeline.build_record_store(conf)
            rows = records.get_all_records(status_filter=args.status)
            if not rows:
                print("No records.")
            for record in rows:
                detail = record.hls_playlist_url or record.error_message or ""
                print(f"{record.movie_id:>8}  {record.upload_status.value:<10}  {detail}")

        elif args.command == "purge":
            storage = pipeline.build_storage(conf)
            raw_key = None
            if args.raw:
                record = pipeline.build_record_store(conf).find_record_by_movie_id(args.movie_id)
                raw_key = record.raw_file_path if record else None
            deleted = purge_artifacts(
                storage,
                args.movie_id,
                processed_bucket=conf.storage.bucket_processed,
                raw_bucket=conf.storage.bucket_raw if raw_key else None,
                raw_key=raw_key,
            )
            print(f"Deleted {deleted} objects for movie {args.movie_id}")

        elif args.command == "check":
            print("Checking dependencies...")
            try:
                ffmpeg_exe = get_ffmpeg_exe(conf.ffmpeg.ffmpeg_path)
            except RuntimeError as e:
                print(f"❌ ffmpeg NOT found: {e}")
                sys.exit(1)
            print(f"✅ ffmpeg: {ffmpeg_exe}")
            negotiator = EncoderNegotiator.from_config(
                conf.encoder, ffmpeg_exe, software_preset=conf.transcode.software_preset
            )
            for result in negotiator.probe_all():
                mark = "✅" if result.available else "❌"
                suffix = f" ({result.detail})" if result.detail and not result.available else ""
                print(f"{mark} {result.codec}{suffix}")
            print(f"Selected encoder: {negotiator.select().codec}")

    except PipelineError as e:
        print(f"❌ {type(e).__name__}: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
