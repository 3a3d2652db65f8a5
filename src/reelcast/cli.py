import argparse
import json
import signal
import sys
import threading

from pydantic import ValidationError

from .config import resolve_config
from .errors import ReelcastError
from .logging_setup import configure_logging
from .models import (
    GENERATION_QUEUE,
    PUBLISH_QUEUE,
    GenerationJobPayload,
    PublishJobPayload,
    PublishSettings,
    Video,
)
from .orchestrator import GENERATION_PRIORITY, PUBLISH_PRIORITY, Orchestrator

QUEUE_CHOICES = [GENERATION_QUEUE, PUBLISH_QUEUE]


def _split_tags(value):
    if value is None:
        return None
    return [tag for tag in value.replace(",", " ").split() if tag]


def _publish_settings(args):
    if not args.credential_ref:
        return None
    return PublishSettings(
        credential_ref=args.credential_ref,
        caption=args.caption,
        tags=_split_tags(args.tags),
        auto_publish=not getattr(args, "no_auto_publish", False),
    )


def _add_publish_options(parser):
    parser.add_argument("--credential-ref", type=str, help="Credential reference for publishing")
    parser.add_argument("--caption", type=str, help="Caption (default: user/config default)")
    parser.add_argument("--tags", type=str, help="Comma or space separated hashtags")


def _print_stats(stats):
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    for queue_name, counts in stats.items():
        print(f"[{queue_name}]")
        print(f"  Waiting:            {counts['waiting']}")
        print(f"  Active:             {counts['active']}")
        print(f"  Delayed:            {counts['delayed']}")
        print(f"  Completed:          {counts['completed']}")
        print(f"  Failed:             {counts['failed']}")
    print("=" * 60)


def run_worker(orchestrator: Orchestrator) -> None:
    """Run both worker pools until SIGINT/SIGTERM."""
    stop_requested = threading.Event()

    def handle_signal(signum, frame):
        print(f"\nReceived signal {signum}, draining workers...")
        stop_requested.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    orchestrator.start()
    print("Workers running. Press Ctrl+C to stop.")
    try:
        while not stop_requested.wait(timeout=1.0):
            pass
    finally:
        drained = orchestrator.stop()
        if not drained:
            print("Shutdown deadline reached; unfinished jobs will be reclaimed on next start.")


def main():
    parser = argparse.ArgumentParser(
        prog="reelcast", description="Video generation and publishing job orchestrator"
    )
    parser.add_argument("--config", type=str, help="YAML overrides (default: config/local.yaml)")
    parser.add_argument("--db", type=str, help="Database path")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run generation and publish workers")
    worker_parser.add_argument("--generation-workers", type=int, help="Generation queue slots")
    worker_parser.add_argument("--publish-workers", type=int, help="Publish queue slots")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP control API")
    serve_parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="Serve the API without running workers"
    )

    # GENERATE
    gen_parser = subparsers.add_parser("generate", help="Enqueue a video generation job")
    gen_parser.add_argument("--video-id", required=True, help="Video record id")
    gen_parser.add_argument("--user-id", required=True, help="Owner user id")
    gen_parser.add_argument("--prompt", required=True, help="Generation prompt")
    gen_parser.add_argument("--image-url", required=True, help="Source image URL")
    gen_parser.add_argument("--width", type=int, default=720, help="Width (px)")
    gen_parser.add_argument("--height", type=int, default=1280, help="Height (px)")
    gen_parser.add_argument("--fps", type=int, default=24, help="Frames per second")
    gen_parser.add_argument("--quality", choices=["low", "medium", "high"], default="high")
    gen_parser.add_argument("--seed", type=int, help="Provider seed")
    gen_parser.add_argument("--priority", type=int, default=GENERATION_PRIORITY)
    gen_parser.add_argument(
        "--create", action="store_true", help="Create the video record if it does not exist"
    )
    gen_parser.add_argument("--title", type=str, help="Title for a record created with --create")
    _add_publish_options(gen_parser)
    gen_parser.add_argument(
        "--no-auto-publish", action="store_true", help="Do not chain a publish job"
    )

    # PUBLISH
    pub_parser = subparsers.add_parser("publish", help="Enqueue a publish job for a completed video")
    pub_parser.add_argument("--video-id", required=True, help="Video record id")
    pub_parser.add_argument("--user-id", required=True, help="Owner user id")
    pub_parser.add_argument("--artifact-url", type=str, help="Video URL (default: the record's)")
    pub_parser.add_argument("--priority", type=int, default=PUBLISH_PRIORITY)
    _add_publish_options(pub_parser)

    # QUEUE MANAGEMENT
    queue_parser = subparsers.add_parser("queue", help="Manage job queues")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", help="Show queue counts")

    job_parser = queue_subparsers.add_parser("job", help="Show one job")
    job_parser.add_argument("job_id", help="Job id")
    job_parser.add_argument("--queue", choices=QUEUE_CHOICES, default=GENERATION_QUEUE)

    cancel_parser = queue_subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", help="Job id")
    cancel_parser.add_argument("--queue", choices=QUEUE_CHOICES, default=GENERATION_QUEUE)

    clean_parser = queue_subparsers.add_parser("clean", help="Purge old completed/failed jobs")
    clean_parser.add_argument(
        "--older-than-hours", type=float, help="Retention window (default: config)"
    )

    queue_subparsers.add_parser("recover", help="Reclaim jobs with expired leases")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return
    if args.command == "queue" and args.queue_command is None:
        queue_parser.print_help()
        return

    cli_dict = {
        "db": args.db,
        "log_level": args.log_level,
        "generation_workers": getattr(args, "generation_workers", None),
        "publish_workers": getattr(args, "publish_workers", None),
    }
    try:
        config = resolve_config(cli_dict, config_path=args.config)
    except (ValidationError, ValueError) as e:
        print(f"❌ Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    configure_logging(config.log_level)

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        app = create_app(config=config, start_workers=not args.no_workers)
        uvicorn.run(app, host=args.host, port=args.port)
        return

    orchestrator = Orchestrator.from_config(config)
    try:
        if args.command == "worker":
            run_worker(orchestrator)

        elif args.command == "generate":
            if args.create and orchestrator.store.get_video(args.video_id) is None:
                orchestrator.store.create_video(
                    Video(id=args.video_id, user_id=args.user_id, title=args.title)
                )
            payload = GenerationJobPayload(
                video_id=args.video_id,
                user_id=args.user_id,
                prompt=args.prompt,
                source_image_url=args.image_url,
                width=args.width,
                height=args.height,
                fps=args.fps,
                quality=args.quality,
                seed=args.seed,
                publish_settings=_publish_settings(args),
            )
            job_id = orchestrator.enqueue_generation(payload, priority=args.priority)
            print(f"✅ Enqueued generation job {job_id}")

        elif args.command == "publish":
            if not args.credential_ref:
                print("❌ --credential-ref is required", file=sys.stderr)
                sys.exit(2)
            artifact_url = args.artifact_url
            if not artifact_url:
                video = orchestrator.store.get_video(args.video_id)
                artifact_url = video.video_url if video else None
            if not artifact_url:
                print(f"❌ Video {args.video_id} has no artifact URL", file=sys.stderr)
                sys.exit(1)
            payload = PublishJobPayload(
                video_id=args.video_id,
                user_id=args.user_id,
                artifact_url=artifact_url,
                publish_settings=_publish_settings(args),
            )
            job_id = orchestrator.enqueue_publish(payload, priority=args.priority)
            print(f"✅ Enqueued publish job {job_id}")

        elif args.command == "queue":
            if args.queue_command == "status":
                _print_stats(orchestrator.get_queue_stats())

            elif args.queue_command == "job":
                job = orchestrator.get_job_status(args.job_id, args.queue)
                print(json.dumps(job, indent=2))
                if job["status"] == "not_found":
                    sys.exit(1)

            elif args.queue_command == "cancel":
                if orchestrator.cancel_job(args.job_id, args.queue):
                    print(f"✅ Job {args.job_id} cancelled")
                else:
                    job = orchestrator.get_job_status(args.job_id, args.queue)
                    if job["status"] == "active":
                        print(f"Job {args.job_id} is running; it will not be retried or chained")
                    else:
                        print(f"❌ Job {args.job_id} cannot be cancelled ({job['status']})")
                        sys.exit(1)

            elif args.queue_command == "clean":
                deleted = orchestrator.clean_queues(args.older_than_hours)
                for queue_name, count in deleted.items():
                    print(f"{queue_name}: purged {count} job(s)")

            elif args.queue_command == "recover":
                print(f"Reclaimed {orchestrator.recover()} job(s) with expired leases")

    except (ValidationError, ReelcastError) as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
