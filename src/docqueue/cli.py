import argparse
import importlib
import inspect
import sys
import time

import yaml
from tqdm import tqdm

from .config import get_config_value, resolve_config, setup_logging
from .errors import DocQueueError
from .job_store import JobStore
from .renderer import Renderer
from .service import QueueService
from .store.sqlite_backend import SQLiteStore


class _CallableRenderer(Renderer):
    """Adapts a plain ``fn(job_type, payload) -> bytes`` to the Renderer ABC."""

    def __init__(self, fn):
        self.fn = fn

    def render(self, job_type, payload):
        return self.fn(job_type, payload)


def load_renderer(ref: str) -> Renderer:
    """Load a renderer from a ``module:attribute`` reference.

    The attribute may be a Renderer instance, a Renderer subclass (created with
    no arguments) or a callable taking (job_type, payload).
    """
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Renderer must be given as module:attribute, got {ref!r}")

    target = getattr(importlib.import_module(module_name), attr)
    if isinstance(target, Renderer):
        return target
    if inspect.isclass(target) and issubclass(target, Renderer):
        return target()
    if callable(target):
        return _CallableRenderer(target)
    raise TypeError(f"{ref} is not a renderer")


def _open_job_store(config):
    kv = SQLiteStore(config.store.path, busy_timeout_s=config.store.busy_timeout_s)
    return kv, JobStore.from_config(kv, config.store)


def _print_stats(stats: dict) -> None:
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    for name, depth in stats["queue_depth_by_priority"].items():
        print(f"Queued {name:<14}{depth}")
    print(f"Queued total          {stats['queued']}")
    print(f"Processing:           {stats['processing']}")
    print("=" * 60)


def _print_config(config, key=None) -> None:
    data = config.model_dump(mode="json")
    if key:
        missing = object()
        data = get_config_value(data, key, default=missing)
        if data is missing:
            print(f"Unknown config key: {key}", file=sys.stderr)
            sys.exit(1)
    if isinstance(data, dict):
        print(yaml.safe_dump(data, sort_keys=False), end="")
    else:
        print(data)


def _print_job(job) -> None:
    print(job.model_dump_json(indent=2))


def _run_worker(config, args) -> None:
    renderer = load_renderer(args.renderer)
    service = QueueService.from_config(config, renderer)

    with service:
        service.start()
        if args.drain:
            _drain_with_progress(service)
            return

        print("Worker pool running, press Ctrl+C to stop")
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nShutting down...")


def _drain_with_progress(service: QueueService) -> None:
    total = service.store.queue_depth() + service.store.processing_count()
    poll = min(service.pool.config.poll_interval_s, 0.5)

    with tqdm(total=total, desc="Processing jobs", unit="job") as bar:
        done = 0
        while True:
            stats = service.pool.stats()
            finished = stats.completed + stats.failed
            if finished > done:
                bar.update(finished - done)
                done = finished
            if service.pool.drain(timeout=poll):
                break

        stats = service.pool.stats()
        bar.update(max(stats.completed + stats.failed - done, 0))

    print("\n" + "=" * 60)
    print("PROCESSING SUMMARY")
    print("=" * 60)
    print(f"Completed:            {stats.completed}")
    print(f"Failed:               {stats.failed}")
    print(f"Retried:              {stats.retried}")
    print(f"Avg processing time:  {stats.avg_processing_time_s:.2f}s")
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="docqueue", description="Prioritized document rendering queue"
    )
    parser.add_argument("--db", type=str, help="Shared store database path")
    parser.add_argument("--config", type=str, help="Extra YAML config file")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    subparsers.add_parser("stats", help="Show queue depths")

    status_parser = subparsers.add_parser("status", help="Show a job")
    status_parser.add_argument("job_id", type=str)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    cancel_parser.add_argument("job_id", type=str)

    retry_parser = subparsers.add_parser("retry", help="Requeue a failed job")
    retry_parser.add_argument("job_id", type=str)

    list_parser = subparsers.add_parser("list", help="List an owner's jobs")
    list_parser.add_argument("--owner", type=str, required=True, help="Owner identifier")

    subparsers.add_parser("reclaim", help="Requeue or fail abandoned jobs")
    subparsers.add_parser("purge", help="Delete expired store entries")

    config_parser = subparsers.add_parser("config", help="Show the resolved configuration")
    config_parser.add_argument(
        "key", nargs="?", help="Dotted setting to show, e.g. worker.max_retries"
    )

    work_parser = subparsers.add_parser("work", help="Run a worker pool")
    work_parser.add_argument(
        "--renderer", type=str, required=True, help="Renderer as module:attribute"
    )
    work_parser.add_argument("--workers", "-w", type=int, help="Concurrent worker slots")
    work_parser.add_argument(
        "--drain", action="store_true", help="Exit once the queues are empty"
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return

    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=args.config)
    setup_logging(config.log_level)

    if args.command == "config":
        _print_config(config, args.key)
        return

    if args.command == "work":
        _run_worker(config, args)
        return

    kv, job_store = _open_job_store(config)
    try:
        if args.command == "stats":
            _print_stats(job_store.stats())

        elif args.command == "status":
            job = job_store.get_job(args.job_id)
            if job is None:
                print(f"Job not found: {args.job_id}", file=sys.stderr)
                sys.exit(1)
            _print_job(job)

        elif args.command == "cancel":
            job = job_store.cancel(args.job_id)
            print(f"Job {job.id}: {job.status.value}")

        elif args.command == "retry":
            job = job_store.retry(args.job_id)
            print(f"Job {job.id}: {job.status.value} (priority {job.priority.name})")

        elif args.command == "list":
            jobs = job_store.list_by_owner(args.owner)
            for job in jobs:
                print(
                    f"{job.id}  {job.type:<14} {job.status.value:<10} "
                    f"{job.priority.name:<6} {job.created_at.isoformat()}"
                )
            print(f"{len(jobs)} job(s)")

        elif args.command == "reclaim":
            print(f"Reclaimed {job_store.reclaim_stuck()} stuck job(s)")

        elif args.command == "purge":
            print(f"Purged {job_store.purge_expired()} expired entries")

    except DocQueueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        kv.close()


if __name__ == "__main__":
    main()
