"""
Command-line interface for Proofline.

Provides commands to initialize the database, register integrations, queue
checks, run the scheduler and workers, verify evidence chains, report
integration health, and summarize compliance per customer.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

from proofline import __version__
from proofline.config.credentials import ConfigCipher, SecretsError
from proofline.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global output mode (set during main() based on args)
_quiet_mode = False

INTEGRATION_TYPES = ["aws", "github", "okta", "jira", "slack"]


def set_output_mode(quiet: bool = False) -> None:
    """Set the output mode for the CLI."""
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for JSON output).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the Proofline CLI."""
    parser = argparse.ArgumentParser(
        prog="proofline",
        description="Continuous compliance evidence pipeline",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"proofline {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.proofline/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize Proofline",
        description="Write the default config, create the database and load SOC 2 controls.",
    )
    init_parser.add_argument(
        "--generate-key",
        action="store_true",
        dest="generate_key",
        help="Print a new encryption key for PROOFLINE_SECRET_KEY",
    )
    init_parser.set_defaults(func=cmd_init)

    # integration command
    integration_parser = subparsers.add_parser(
        "integration",
        help="Manage customer integrations",
        description="Register or list customer integrations.",
    )
    integration_sub = integration_parser.add_subparsers(
        dest="integration_command",
        metavar="<action>",
    )
    add_parser = integration_sub.add_parser(
        "add",
        help="Register an integration",
        description="Encrypt and store an integration config for a customer.",
    )
    add_parser.add_argument("--customer", required=True, help="Customer ID")
    add_parser.add_argument(
        "--type",
        required=True,
        choices=INTEGRATION_TYPES,
        dest="integration_type",
        help="Integration type",
    )
    add_parser.add_argument(
        "--config-file",
        metavar="PATH",
        dest="config_file",
        help="JSON file with the integration config",
    )
    add_parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        dest="values",
        help="Config value (can be repeated)",
    )
    add_parser.set_defaults(func=cmd_integration_add)

    list_parser = integration_sub.add_parser(
        "list",
        help="List integrations",
    )
    list_parser.add_argument("--customer", help="Only this customer's integrations")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_integration_list)

    # enqueue-check command
    check_parser = subparsers.add_parser(
        "enqueue-check",
        help="Queue a compliance check",
        description="Queue a run-check job for one customer control.",
    )
    check_parser.add_argument("--customer", required=True, help="Customer ID")
    check_parser.add_argument("--control", required=True, help="Control ID (e.g., CC6.1.2)")
    check_parser.add_argument(
        "--evidence-id",
        dest="evidence_id",
        help="Evaluate this evidence record instead of the latest",
    )
    check_parser.set_defaults(func=cmd_enqueue_check)

    # schedule command
    schedule_parser = subparsers.add_parser(
        "schedule",
        help="Run the check scheduler",
        description="Fan out compliance checks for due controls.",
    )
    schedule_parser.add_argument(
        "--interval",
        choices=["hourly", "daily", "weekly"],
        help="Override the configured interval",
    )
    schedule_group = schedule_parser.add_mutually_exclusive_group()
    schedule_group.add_argument(
        "--once",
        action="store_true",
        help="Run a single pass and exit",
    )
    schedule_group.add_argument(
        "--customer",
        help="Schedule due checks for one customer and exit",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

    # worker command
    worker_parser = subparsers.add_parser(
        "worker",
        help="Run queue workers",
        description="Consume evidence-collection and compliance-check jobs.",
    )
    worker_parser.add_argument(
        "--drain",
        action="store_true",
        help="Process available jobs and exit",
    )
    worker_parser.add_argument(
        "--with-scheduler",
        action="store_true",
        dest="with_scheduler",
        help="Also run the scheduler loop in this process",
    )
    worker_parser.set_defaults(func=cmd_worker)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify evidence integrity",
        description="Re-derive hashes for one record or a whole chain.",
    )
    verify_parser.add_argument("--evidence-id", dest="evidence_id", help="Evidence ID")
    verify_parser.add_argument("--customer", help="Customer ID (chain mode)")
    verify_parser.add_argument("--control", help="Control ID (chain mode)")
    verify_parser.add_argument("--json", action="store_true", help="Output as JSON")
    verify_parser.set_defaults(func=cmd_verify)

    # jobs command
    jobs_parser = subparsers.add_parser(
        "jobs",
        help="Show queued jobs",
        description="Show job counts per queue, or failed jobs.",
    )
    jobs_parser.add_argument(
        "--failed",
        action="store_true",
        help="List failed jobs with their last error",
    )
    jobs_parser.set_defaults(func=cmd_jobs)

    # health command
    health_parser = subparsers.add_parser(
        "health",
        help="Show integration health",
        description="Classify integrations from circuit breaker state and health scores.",
    )
    health_parser.add_argument("--json", action="store_true", help="Output as JSON")
    health_parser.add_argument(
        "--customer",
        help="Score collectors from this customer's live evidence (calls each platform)",
    )
    health_parser.add_argument(
        "--notify",
        action="store_true",
        help="Send a warning for degraded or unhealthy integrations",
    )
    health_parser.set_defaults(func=cmd_health)

    # summary command
    summary_parser = subparsers.add_parser(
        "summary",
        help="Show the compliance summary for a customer",
        description="Count the latest check result per control for a customer.",
    )
    summary_parser.add_argument("--customer", required=True, help="Customer ID")
    summary_parser.add_argument("--json", action="store_true", help="Output as JSON")
    summary_parser.add_argument(
        "--notify",
        action="store_true",
        help="Post the summary to the customer's Slack webhook",
    )
    summary_parser.set_defaults(func=cmd_summary)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _config_path(args: argparse.Namespace) -> Path:
    return Path(args.config) if args.config else get_config_path()


def _load_settings(args: argparse.Namespace) -> Settings:
    return load_config(_config_path(args))


def _build(args: argparse.Namespace) -> Any:
    """Load settings and the encryption key, then build the pipeline."""
    from proofline.pipeline import build_pipeline

    settings = _load_settings(args)
    cipher = ConfigCipher.from_environment(Path(settings.data_dir))
    return build_pipeline(settings, cipher)


def _parse_values(values: list[str]) -> dict[str, str]:
    config = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got: {item}")
        config[key.strip()] = value
    return config


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize Proofline configuration and database."""
    from proofline.controls import SOC2_CONTROLS
    from proofline.storage import ComplianceRepository, Database

    output("Proofline Initialization")
    output("=" * 50)
    output()

    config_path = _config_path(args)
    if config_path.exists():
        output(f"Using existing configuration: {config_path}")
        settings = _load_settings(args)
    else:
        settings = Settings()
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    database = Database(settings.db_path)
    count = ComplianceRepository(database).upsert_controls(SOC2_CONTROLS)
    output(f"Database ready: {settings.db_path}")
    output(f"Loaded {count} SOC 2 controls")

    if args.generate_key:
        output()
        output("Encryption key (store it securely, it is not saved):")
        output(ConfigCipher.generate_key(), force=True)

    output()
    output("Next steps:")
    output("  1. Export PROOFLINE_SECRET_KEY or PROOFLINE_PASSPHRASE")
    output("  2. Run 'proofline integration add' for each customer platform")
    output("  3. Run 'proofline worker --with-scheduler' to start the pipeline")
    output()
    return 0


def cmd_integration_add(args: argparse.Namespace) -> int:
    """Register an integration with an encrypted config."""
    from proofline.storage import ComplianceRepository, Database, Integration

    config: dict[str, Any] = {}
    if args.config_file:
        try:
            with open(args.config_file) as f:
                config.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            output_error(f"Error reading config file: {e}")
            return 1
    try:
        config.update(_parse_values(args.values))
    except ValueError as e:
        output_error(f"Error: {e}")
        return 1

    if not config:
        output_error("Error: Provide --config-file or at least one --set KEY=VALUE")
        return 1

    settings = _load_settings(args)
    cipher = ConfigCipher.from_environment(Path(settings.data_dir))
    repository = ComplianceRepository(Database(settings.db_path))

    integration = Integration.create(
        customer_id=args.customer,
        integration_type=args.integration_type,
        encrypted_config=cipher.encrypt_config(config),
    )
    repository.save_integration(integration)
    output(f"Added {args.integration_type} integration {integration.id}")
    return 0


def cmd_integration_list(args: argparse.Namespace) -> int:
    """List registered integrations (configs stay encrypted)."""
    from proofline.storage import ComplianceRepository, Database

    settings = _load_settings(args)
    repository = ComplianceRepository(Database(settings.db_path))
    integrations = repository.list_integrations(customer_id=args.customer)

    if args.json:
        output(json.dumps([i.to_dict() for i in integrations], indent=2), force=True)
        return 0

    if not integrations:
        output("No integrations registered.")
        return 0

    output(f"{'ID':<38} {'Customer':<20} {'Type':<8} Status")
    output("-" * 76)
    for integration in integrations:
        output(
            f"{integration.id:<38} {integration.customer_id:<20} "
            f"{integration.integration_type:<8} {integration.status.value}"
        )
    return 0


def cmd_enqueue_check(args: argparse.Namespace) -> int:
    """Queue a run-check job."""
    from proofline.jobs import RUN_CHECK, JobQueue
    from proofline.storage import ComplianceRepository, Database

    settings = _load_settings(args)
    database = Database(settings.db_path)
    if ComplianceRepository(database).get_control(args.control) is None:
        output_error(f"Error: Unknown control {args.control}. Run 'proofline init' first.")
        return 1

    payload: dict[str, Any] = {"customer_id": args.customer, "control_id": args.control}
    if args.evidence_id:
        payload["evidence_id"] = args.evidence_id

    queue = JobQueue(
        database,
        max_attempts=settings.queue.max_attempts,
        backoff_base_ms=settings.queue.backoff_base_ms,
    )
    job = queue.enqueue(RUN_CHECK, payload)
    output(f"Queued check job {job.id}")
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    """Run the scheduler: one pass, one customer, or the background loop."""
    from proofline.scheduler import ScheduleInterval, schedule_checks

    pipeline = _build(args)
    scheduler = pipeline.scheduler
    if args.interval:
        scheduler.interval = ScheduleInterval.from_string(args.interval)

    if args.customer:
        jobs = schedule_checks(pipeline.repository, pipeline.queue, args.customer)
        output(f"Queued {len(jobs)} checks for {args.customer}")
        return 0

    if args.once:
        run = scheduler.run_once()
        output(f"Queued check fan-out for {len(run.customers)} customers")
        return 0

    output(f"Scheduler running ({scheduler.interval.value}). Press Ctrl+C to stop.")
    try:
        scheduler.start(foreground=True)
    except KeyboardInterrupt:
        scheduler.stop()
        output("\nScheduler stopped.")
    return 0


def cmd_worker(args: argparse.Namespace) -> int:
    """Run the worker pool."""
    from proofline.jobs import COMPLIANCE_CHECK_QUEUE, EVIDENCE_COLLECTION_QUEUE

    pipeline = _build(args)
    pool = pipeline.pool

    if args.drain:
        processed = pool.drain([COMPLIANCE_CHECK_QUEUE, EVIDENCE_COLLECTION_QUEUE])
        output(f"Processed {processed} jobs")
        return 0

    pool.start()
    if args.with_scheduler:
        pipeline.scheduler.start()
    output("Workers running. Press Ctrl+C to stop.")

    try:
        pool.wait()
    except KeyboardInterrupt:
        output("\nStopping workers...")
    finally:
        if args.with_scheduler:
            pipeline.scheduler.stop()
        pool.stop()
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify one evidence record or a whole chain."""
    from proofline.storage import Database, EvidenceLedger, EvidenceNotFoundError

    if not args.evidence_id and not (args.customer and args.control):
        output_error("Error: Provide --evidence-id, or --customer and --control")
        return 1

    settings = _load_settings(args)
    ledger = EvidenceLedger(Database(settings.db_path))

    if args.evidence_id:
        try:
            valid = ledger.verify_evidence(args.evidence_id)
        except EvidenceNotFoundError as e:
            output_error(f"Error: {e}")
            return 1
        if args.json:
            output(json.dumps({"evidence_id": args.evidence_id, "valid": valid}), force=True)
        else:
            output(f"Evidence {args.evidence_id}: {'VALID' if valid else 'TAMPERED'}")
        return 0 if valid else 1

    result = ledger.verify_chain(args.customer, args.control)
    if args.json:
        output(json.dumps(result.to_dict(), indent=2), force=True)
    elif result.valid:
        output(f"Chain {args.customer}/{args.control}: VALID ({result.length} records)")
    else:
        output(
            f"Chain {args.customer}/{args.control}: BROKEN at {result.broken_at} "
            f"({result.reason})"
        )
    return 0 if result.valid else 1


def cmd_jobs(args: argparse.Namespace) -> int:
    """Show job queue status."""
    from proofline.jobs import JobQueue, JobStatus
    from proofline.storage import Database

    settings = _load_settings(args)
    queue = JobQueue(Database(settings.db_path))

    if args.failed:
        failed = queue.list_jobs(status=JobStatus.FAILED)
        if not failed:
            output("No failed jobs.")
        for job in failed:
            output(f"{job.id} {job.job_type} attempts={job.attempts} error={job.last_error}")
        return 0

    counts = queue.counts()
    if not counts:
        output("No jobs.")
    for queue_name, statuses in sorted(counts.items()):
        summary = ", ".join(f"{status}={n}" for status, n in sorted(statuses.items()))
        output(f"{queue_name}: {summary}")
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    """Show integration health from circuit breaker state and health scores."""
    pipeline = _build(args)
    if not pipeline.settings.resilience.shared_breaker_state:
        logger.warning(
            "Breaker state is per process; enable resilience.shared_breaker_state "
            "to see worker breakers"
        )

    scores = None
    if args.customer:
        scores = pipeline.collection_worker.health_scores(args.customer)

    monitor = pipeline.health_monitor()
    report = monitor.check(scores)

    if args.json:
        output(json.dumps(report.to_dict(), indent=2), force=True)
    else:
        output("Integration Health")
        output("=" * 50)
        for item in report.integrations:
            output(
                f"  {item.integration:<8} {item.status:<10} "
                f"breaker={item.breaker_state} failures={item.failure_count} "
                f"score={item.health_score * 100:.0f}%"
            )
        output(f"Overall health score: {report.overall_health_score * 100:.0f}%")

    if args.notify:
        failures = {
            name: error for name, error in monitor.send_warnings(report).items() if error
        }
        for name, error in failures.items():
            output_error(f"Failed to send health warning for {name}: {error}")
        if failures:
            return 1
    return 0


def cmd_summary(args: argparse.Namespace) -> int:
    """Show, and optionally post, the customer's compliance summary."""
    from proofline.collectors.base import CollectorError
    from proofline.resilience import CircuitOpenError

    if args.notify:
        pipeline = _build(args)
        summary = pipeline.repository.summarize_checks(args.customer)
    else:
        from proofline.storage import ComplianceRepository, Database

        settings = _load_settings(args)
        summary = ComplianceRepository(Database(settings.db_path)).summarize_checks(
            args.customer
        )

    if args.json:
        output(json.dumps(summary.to_dict(), indent=2), force=True)
    else:
        output(f"Compliance Summary: {args.customer}")
        output("=" * 50)
        output(f"  Compliance rate: {summary.compliance_rate * 100:.1f}%")
        output(f"  Total checks:    {summary.total}")
        output(f"  Passed:          {summary.passed}")
        output(f"  Failed:          {summary.failed}")
        output(f"  Warnings:        {summary.warnings}")

    if args.notify:
        try:
            webhook_url = pipeline.coordinator.customer_webhook(args.customer)
            result = pipeline.notifier.send_daily_summary(summary, webhook_url=webhook_url)
        except (CollectorError, CircuitOpenError, SecretsError) as e:
            output_error(f"Failed to send summary: {e}")
            return 1
        output(f"Summary notification: {result['status']}")
    return 0


def main() -> NoReturn:
    """Main entry point for the Proofline CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None or not hasattr(args, "func"):
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except SecretsError as e:
        output_error(f"Secrets error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
