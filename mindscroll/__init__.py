#!/usr/bin/env python3
"""
MindScroll: turn uploaded material into cards and schedule their review.

The package has two halves:
- mindscroll.jobs: the asynchronous pipeline (work queue, worker pool,
  reconciler, job store) that converts uploads into cards
- mindscroll.learning: review scheduling and chapter progression for the
  generated cards
"""

# Standard library imports
import sys
import difflib
import logging

from .config import PipelineConfig
from .core import (
    CardDraft,
    CardGenerator,
    CardSet,
    ChapterDraft,
    GenerationError,
    PermanentGenerationError,
    SourceError,
    SourceExtractor,
    SourceType,
    TransientGenerationError,
    is_retryable,
)
from .jobs import JobManager, JobStatus, UploadJob, load_generator, run_worker
from .learning import LearningManager

__version__ = "1.0.0"

__all__ = [
    'PipelineConfig',
    'CardDraft',
    'CardGenerator',
    'CardSet',
    'ChapterDraft',
    'GenerationError',
    'PermanentGenerationError',
    'SourceError',
    'SourceExtractor',
    'SourceType',
    'TransientGenerationError',
    'is_retryable',
    'JobManager',
    'JobStatus',
    'UploadJob',
    'LearningManager',
    'main',
]

COMMANDS = ('submit', 'status', 'jobs', 'cancel', 'retry', 'worker', 'prune', 'stats')

# Options that consume the following argument
VALUE_OPTIONS = {
    '--user', '--file', '--url', '--text', '--title', '--priority',
    '--upload-id', '--generator', '--data-dir', '--days',
}


def get_valid_options():
    """Return a set of valid command line options"""
    return VALUE_OPTIONS | {'-h', '--help', '--debug'}


def print_usage():
    """Print usage information"""
    print("""
Usage: mindscroll <command> [options]

Commands:
    submit      Queue an upload for card generation
    status      Show the status of a job
    jobs        List every job of an upload
    cancel      Cancel a queued or running job
    retry       Resubmit a failed job
    worker      Run the worker pool in the foreground
    prune       Recover stale leases and prune finished queue items
    stats       Show job statistics (or a user's learning statistics)

Examples:
    mindscroll submit --user alice --file book.pdf --title "My Book"
    mindscroll submit --user alice --url https://example.com/article
    mindscroll submit --user alice --text "Photosynthesis converts light..."
    mindscroll status <job_id>
    mindscroll jobs <upload_id>
    mindscroll worker --generator mypackage.generators:OpenAIGenerator
    mindscroll prune --days 30
    mindscroll stats --user alice

Options:
    --user <id>            Owner of the upload (submit) or user to report on (stats)
    --file <path>          PDF, EPUB or TXT file to process
    --url <url>            Web page to process
    --text <text>          Inline text to process
    --title <title>        Title for the generated content
    --priority <n>         Higher numbers are processed first (default: 0)
    --upload-id <id>       Upload identity (default: generated)
    --generator <mod:attr> Card generator used by the worker
    --data-dir <dir>       Database directory (default: $MINDSCROLL_DATA_DIR or ~/.mindscroll)
    --days <n>             Also delete finished jobs' log lines older than n days (prune)
    --debug                Show detailed log output
    -h, --help             Show this help message

Environment:
    MINDSCROLL_CONCURRENCY, MINDSCROLL_MAX_ATTEMPTS, MINDSCROLL_BACKOFF_TYPE,
    MINDSCROLL_BACKOFF_DELAY, MINDSCROLL_GENERATION_TIMEOUT, ... (see PipelineConfig)
""")


def parse_arguments(argv):
    """
    Split argv into a command, positional arguments and option values.

    Unknown options exit with suggestions for close matches.
    """
    valid_options = get_valid_options()
    unknown_options = []
    positionals = []
    options = {}

    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg.startswith('-') and arg not in valid_options:
            unknown_options.append(arg)
        elif arg in VALUE_OPTIONS:
            if i + 1 >= len(argv):
                print(f"Error: {arg} requires a value")
                sys.exit(1)
            options[arg] = argv[i + 1]
            i += 1
        elif arg.startswith('-'):
            options[arg] = True
        else:
            positionals.append(arg)
        i += 1

    if unknown_options:
        print("Error: Unknown option(s):", ", ".join(unknown_options))
        print("\nDid you mean one of these?")
        for unknown in unknown_options:
            similar = difflib.get_close_matches(unknown, valid_options, n=3, cutoff=0.4)
            if similar:
                print(f"  {unknown} -> {', '.join(similar)}")
        print("\n")
        print_usage()
        sys.exit(1)

    command = positionals.pop(0) if positionals else None
    if command is not None and command not in COMMANDS:
        print(f"Error: Unknown command '{command}'")
        similar = difflib.get_close_matches(command, COMMANDS, n=1, cutoff=0.5)
        if similar:
            print(f"  Did you mean '{similar[0]}'?")
        sys.exit(1)

    return command, positionals, options


def _int_option(options, name, default):
    value = options.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        print(f"Error: {name} must be an integer")
        sys.exit(1)


def _require_positional(positionals, what):
    if not positionals:
        print(f"Error: missing {what}")
        sys.exit(1)
    return positionals[0]


def print_job(job):
    """Print one job record."""
    print(f"Job {job.job_id}")
    print(f"  Upload:   {job.upload_id} ({job.source_type})")
    print(f"  Status:   {job.status.value} - {job.format_status_message()}")
    print(f"  Progress: {job.progress}%")
    print(f"  Attempts: {job.attempts_made}")
    elapsed = job.get_elapsed_time()
    if elapsed is not None:
        print(f"  Elapsed:  {elapsed:.1f}s")
    if job.result:
        print(f"  Content:  {job.result.get('content_id')}")


def main():
    """Main entry point for the mindscroll CLI tool."""
    argv = sys.argv[1:]

    if not argv or '--help' in argv or '-h' in argv:
        print_usage()
        sys.exit(0)

    command, positionals, options = parse_arguments(argv)

    logging.basicConfig(
        level=logging.DEBUG if options.get('--debug') else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        config = PipelineConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)
    if options.get('--data-dir'):
        config.data_dir = options['--data-dir']

    if command == 'worker':
        generator_path = options.get('--generator')
        if not generator_path:
            print("Error: worker requires --generator module:attribute")
            sys.exit(1)
        try:
            generator = load_generator(generator_path)
        except (ImportError, AttributeError, ValueError) as e:
            print(f"Error: could not load generator: {e}")
            sys.exit(1)
        run_worker(generator, config)
        return

    if command == 'stats' and options.get('--user'):
        learning = LearningManager(db_path=config.learning_db_path)
        try:
            stats = learning.get_statistics(options['--user'])
        finally:
            learning.close()
        print(f"User {options['--user']}: level {stats['level']}, {stats['xp']} XP")
        print(f"  Cards reviewed: {stats['cards_reviewed']}")
        print(f"  Cards known:    {stats['cards_known']}")
        return

    manager = JobManager(config=config)
    manager.start()
    try:
        if command == 'submit':
            user_id = options.get('--user')
            sources = [(kind, options[flag]) for flag, kind in (
                ('--file', None), ('--url', 'url'), ('--text', 'text')
            ) if flag in options]
            if not user_id or len(sources) != 1:
                print("Error: submit requires --user and exactly one of --file, --url or --text")
                sys.exit(1)

            source_type, source_ref = sources[0]
            if source_type is None:
                source_type = source_ref.rsplit('.', 1)[-1].lower() if '.' in source_ref else ''

            try:
                job_id = manager.submit_upload(
                    user_id,
                    source_type,
                    source_ref,
                    upload_id=options.get('--upload-id'),
                    title=options.get('--title'),
                    priority=_int_option(options, '--priority', 0),
                )
            except (FileNotFoundError, ValueError) as e:
                print(f"Error: {e}")
                sys.exit(1)
            print(f"Submitted job {job_id}")

        elif command == 'status':
            job_id = _require_positional(positionals, "job id")
            manager.drain(timeout=2.0)
            job = manager.get_job_status(job_id)
            if job is None:
                print(f"Job not found: {job_id}")
                sys.exit(1)
            print_job(job)

        elif command == 'jobs':
            upload_id = _require_positional(positionals, "upload id")
            manager.drain(timeout=2.0)
            jobs = manager.list_jobs_for_upload(upload_id)
            if not jobs:
                print(f"No jobs for upload {upload_id}")
            for job in jobs:
                print_job(job)

        elif command == 'cancel':
            job_id = _require_positional(positionals, "job id")
            if manager.cancel_job(job_id):
                print(f"Cancelled job {job_id}")
            else:
                print(f"Job {job_id} is not queued or running")
                sys.exit(1)

        elif command == 'retry':
            job_id = _require_positional(positionals, "job id")
            manager.drain(timeout=2.0)
            new_job_id = manager.retry_job(job_id)
            if new_job_id is None:
                print(f"Job {job_id} cannot be retried (only failed jobs can)")
                sys.exit(1)
            print(f"Submitted job {new_job_id} (supersedes {job_id})")

        elif command == 'prune':
            deleted = manager.cleanup()
            print(f"Pruned {deleted} finished queue items")
            days = _int_option(options, '--days', None)
            if days is not None:
                removed = manager.cleanup_old_logs(days)
                print(f"Deleted {removed} job log lines older than {days} days")

        elif command == 'stats':
            manager.drain(timeout=2.0)
            stats = manager.get_statistics()
            print("Jobs:")
            for status in JobStatus:
                entry = stats['jobs'].get(status.value, {})
                print(f"  {status.value:<10} {entry.get('count', 0)}")
            print("Queue:")
            for state, count in stats['queue'].items():
                print(f"  {state:<10} {count}")
        else:
            print_usage()
    finally:
        manager.shutdown()
        manager.close()


if __name__ == '__main__':
    main()
