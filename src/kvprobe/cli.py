"""Command-line entry point: ``python -m kvprobe <command>``.

Commands
--------
failover
    Leader-kill trials over the scenario table.  ``--mode precision`` reads
    only after recovery; ``--mode comprehensive`` also reads immediately
    after the kill.
concurrency
    Linearizability, write-durability and read-your-writes batches.
stream
    Continuous ``seq-N`` writer/reader with leader monitoring, analysed for
    gaps, failover windows and baseline vs failover latency.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
import time
from pathlib import Path

from kvprobe.concurrency import ConcurrencyTester
from kvprobe.config import HarnessConfig, load_config
from kvprobe.errors import ConfigurationError, HarnessError, TransientStoreError
from kvprobe.injector import FailureInjector
from kvprobe.leader import LeaderTracker, log_leader_change
from kvprobe.partition import PartitionMapper
from kvprobe.platform import KubernetesPlatform
from kvprobe.recovery import RecoveryDetector, log_recovery_transition
from kvprobe.report import Report, ResultAggregator
from kvprobe.store import HttpStore
from kvprobe.trial import DEFAULT_PLANS, ReadMode, ScenarioPlan, TrialRunner
from kvprobe.workload import WorkloadDriver

log = logging.getLogger("kvprobe")

EXIT_OK = 0
EXIT_VIOLATION = 1
EXIT_ERROR = 2
EXIT_INTERRUPTED = 130


def setup_logging(log_dir: Path, command: str, *, verbose: bool = False) -> list[logging.Handler]:
    ts = int(time.time())
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"kvprobe-{command}-{ts}.log"

    root = logging.getLogger("kvprobe")
    root.setLevel(logging.DEBUG)

    fmt = logging.Formatter("%(asctime)s %(levelname)-5s %(message)s", datefmt="%H:%M:%S")

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    stdout_handler.setFormatter(fmt)

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(fmt)

    root.addHandler(stdout_handler)
    root.addHandler(file_handler)

    log.info("Logging to %s", log_file)
    return [stdout_handler, file_handler]


def close_logging(handlers: list[logging.Handler]) -> None:
    root = logging.getLogger("kvprobe")
    for handler in handlers:
        root.removeHandler(handler)
        handler.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvprobe",
        description="Failover and consistency harness for a replicated key-value store",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to kvprobe.toml (default: discovered from the current directory)",
    )
    parser.add_argument("--store-url", help="Base URL of the store's HTTP gateway")
    parser.add_argument("--map-name", help="Map primitive used by failover trials")
    parser.add_argument("--api-url", help="Kubernetes API URL (default: in-cluster config)")
    parser.add_argument("--namespace", help="Namespace of the store's pods and raft groups")
    parser.add_argument("--partition-count", type=int, help="Number of store partitions")
    parser.add_argument(
        "--poll-interval-millis", type=int, help="Leader poll cadence in milliseconds"
    )
    parser.add_argument(
        "--recovery-timeout-seconds",
        type=float,
        help="Deadline for a new stable leader after a kill",
    )
    parser.add_argument("--report-dir", help="Directory for the JSON report")
    parser.add_argument("--log-dir", help="Directory for the DEBUG log file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log DEBUG to stdout")

    commands = parser.add_subparsers(dest="command", required=True)

    failover = commands.add_parser("failover", help="Run leader-kill trials")
    failover.add_argument(
        "--mode",
        choices=("precision", "comprehensive"),
        default="comprehensive",
        help="precision: post-recovery reads only; comprehensive: immediate + post-recovery "
        "(default: comprehensive)",
    )
    failover.add_argument(
        "--failure-delay-millis",
        type=int,
        help="Use this write-to-kill delay for every trial instead of the scenario table",
    )

    concurrency = commands.add_parser("concurrency", help="Run concurrent-client batches")
    concurrency.add_argument("--concurrent-clients", type=int, help="Clients per batch")
    concurrency.add_argument(
        "--operations-per-client", type=int, help="Sequential writes per client"
    )

    stream = commands.add_parser("stream", help="Run the continuous sequence stream")
    stream.add_argument(
        "--test-duration-seconds", type=float, help="How long to keep writing"
    )
    return parser


def config_from_args(args: argparse.Namespace) -> HarnessConfig:
    config = load_config(args.config)
    return config.with_overrides(
        partition_count=args.partition_count,
        poll_interval_millis=args.poll_interval_millis,
        recovery_timeout_seconds=args.recovery_timeout_seconds,
        report_dir=args.report_dir,
        log_dir=args.log_dir,
        failure_delay_millis=getattr(args, "failure_delay_millis", None),
        concurrent_clients=getattr(args, "concurrent_clients", None),
        operations_per_client=getattr(args, "operations_per_client", None),
        test_duration_seconds=getattr(args, "test_duration_seconds", None),
        **{
            "store.url": args.store_url,
            "store.map_name": args.map_name,
            "platform.api_url": args.api_url,
            "platform.namespace": args.namespace,
        },
    )


def build_platform(config: HarnessConfig) -> KubernetesPlatform:
    options = config.platform
    common = {
        "store_name": options.store_name,
        "replica_offset": options.replica_offset,
        "group_index_base": options.group_index_base,
        "timeout": options.request_timeout,
    }
    if options.api_url is None:
        return KubernetesPlatform.in_cluster(namespace=options.namespace, **common)
    return KubernetesPlatform(
        api_url=options.api_url,
        namespace=options.namespace,
        token=options.token,
        verify=options.verify,
        **common,
    )


async def check_connectivity(driver: WorkloadDriver) -> None:
    """Put/get round trip; raises ``TransientStoreError`` if the store is unusable."""
    key = "connectivity-test"
    value = f"initialized-{int(time.time())}"
    write = await driver.write(key, value)
    if not write.success:
        msg = f"connectivity check failed: {write.error}"
        raise TransientStoreError(msg)
    read = await driver.read(key)
    if read.value != value:
        msg = f"connectivity check failed: read back {read.value!r} ({read.error})"
        raise TransientStoreError(msg)
    log.info("CONNECTIVITY: Initial connectivity and consistency verified")


async def run_failover(
    config: HarnessConfig,
    driver: WorkloadDriver,
    aggregator: ResultAggregator,
    mode: str,
) -> None:
    timings = config.scenario
    async with build_platform(config) as platform:
        tracker = LeaderTracker(
            platform, partition_count=config.partition_count, poll_interval=config.poll_interval
        )
        tracker.subscribe(log_leader_change)
        tracker.subscribe(aggregator.add_leader_change)

        detector = RecoveryDetector(
            tracker,
            poll_interval=config.poll_interval,
            settle_interval=timings.settle_interval,
            timeout=config.recovery_timeout_seconds,
            ready_timeout=timings.leader_ready_timeout,
        )
        detector.subscribe(log_recovery_transition)

        runner = TrialRunner(
            driver,
            FailureInjector(platform, tracker),
            detector,
            PartitionMapper(config.partition_count),
            sink=aggregator.add_trial,
            immediate_read_timeout=timings.immediate_read_timeout,
            verification_read_timeout=timings.verification_read_timeout,
            post_recovery_wait=timings.post_recovery_wait,
            between_trials=timings.between_trials,
            between_modes=timings.between_modes,
            between_scenarios=timings.between_scenarios,
        )

        plans = DEFAULT_PLANS
        if config.failure_delay_millis is not None:
            delay = config.failure_delay_millis
            plans = tuple(
                ScenarioPlan(p.scenario, (delay,) * len(p.delays_ms), p.pause_between)
                for p in DEFAULT_PLANS
            )
        if mode == "precision":
            read_modes: tuple[ReadMode, ...] = (ReadMode.post_recovery,)
        else:
            read_modes = (ReadMode.immediate, ReadMode.post_recovery)

        log.info("FAILOVER_TESTS_START: mode=%s, partitions=%d", mode, config.partition_count)
        async with tracker:
            await runner.run_plans(plans, read_modes)


async def run_concurrency(
    config: HarnessConfig, driver: WorkloadDriver, aggregator: ResultAggregator
) -> None:
    tester = ConcurrencyTester(
        driver,
        clients=config.concurrent_clients,
        operations_per_client=config.operations_per_client,
    )
    log.info(
        "CONFIG: Concurrent clients: %d, Operations per client: %d",
        config.concurrent_clients,
        config.operations_per_client,
    )
    for batch in await tester.run_all():
        aggregator.add_batch(batch)


async def run_stream(
    config: HarnessConfig, driver: WorkloadDriver, aggregator: ResultAggregator
) -> None:
    stop = asyncio.Event()
    async with build_platform(config) as platform:
        tracker = LeaderTracker(
            platform, partition_count=config.partition_count, poll_interval=config.poll_interval
        )
        tracker.subscribe(log_leader_change)
        tracker.subscribe(aggregator.add_leader_change)

        log.info("STREAM_START: duration %.0fs", config.test_duration_seconds)
        async with asyncio.TaskGroup() as group:
            group.create_task(tracker.run(stop))
            group.create_task(
                driver.run_sequence_stream(
                    stop,
                    write_interval=config.scenario.write_interval,
                    read_interval=config.scenario.read_interval,
                    sink=aggregator.add_record,
                )
            )
            try:
                await asyncio.sleep(config.test_duration_seconds)
            finally:
                stop.set()


async def run(config: HarnessConfig, command: str, *, mode: str = "comprehensive") -> Report:
    """Run *command* and return its report, partial if cancelled."""
    aggregator = ResultAggregator()
    map_name = (
        config.store.concurrency_map_name if command == "concurrency" else config.store.map_name
    )
    async with HttpStore(
        config.store.url, map_name, timeout=config.store.request_timeout
    ) as store:
        driver = WorkloadDriver(store, operation_timeout=config.operation_timeout_seconds)
        await check_connectivity(driver)
        try:
            match command:
                case "failover":
                    await run_failover(config, driver, aggregator, mode)
                case "concurrency":
                    await run_concurrency(config, driver, aggregator)
                case "stream":
                    await run_stream(config, driver, aggregator)
                case _:
                    msg = f"unknown command {command!r}"
                    raise ConfigurationError(msg)
        except asyncio.CancelledError:
            log.warning("RUN_INTERRUPTED: writing partial report")
            save_report(aggregator.report(), Path(config.report_dir), command)
            raise
    return aggregator.report()


def log_report(report: Report) -> None:
    data = report.to_dict()
    summary = data["summary"]
    log.info("=== kvprobe Report ===")
    log.info(
        "Trials: %s | Passed: %s | Violations: %s | Incomplete: %s | Abandoned: %s",
        summary["trials"],
        summary["passed"],
        summary["violations"],
        summary["incomplete"],
        summary["abandoned"],
    )
    if summary["durability_survival_rate"] is not None:
        log.info("Durability survival rate: %.1f%%", summary["durability_survival_rate"] * 100)
    if summary["immediate_read_availability"] is not None:
        log.info(
            "Immediate read availability: %.1f%%",
            summary["immediate_read_availability"] * 100,
        )
    for scenario in report.scenarios:
        log.info(
            "  %-20s %-14s %d/%d passed (%.1f%%)",
            scenario.scenario,
            scenario.read_mode,
            scenario.passed,
            scenario.total,
            scenario.success_rate * 100,
        )
    for batch in report.batches:
        log.info("  %-20s %s", batch.name, batch.outcome.value.upper())
    log.info(
        "Write latency: p50=%.1fms p95=%.1fms p99=%.1fms max=%.1fms",
        report.write_latency.median_ms,
        report.write_latency.p95_ms,
        report.write_latency.p99_ms,
        report.write_latency.max_ms,
    )
    if report.recovery.count:
        log.info(
            "Recovery: min=%.2fs mean=%.2fs max=%.2fs",
            report.recovery.min_s,
            report.recovery.mean_s,
            report.recovery.max_s,
        )
    if report.sequence_gaps:
        log.warning("Sequence gaps: %s", report.sequence_gaps)
    log.info(
        "Leader changes: %d | Failover windows: %d",
        report.leader_changes,
        len(report.failover_windows),
    )


def save_report(report: Report, directory: Path, command: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"kvprobe-{command}-report-{int(time.time())}.json"
    with path.open("w") as f:
        json.dump(report.to_dict(), f, indent=2)
    log.info("Full report saved to %s", path)
    return path


async def _main(config: HarnessConfig, command: str, mode: str) -> int:
    task = asyncio.current_task()
    if task is None:
        log.error("FATAL: no running task to cancel on interrupt")
        return EXIT_ERROR
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, task.cancel)
    try:
        report = await run(config, command, mode=mode)
    except asyncio.CancelledError:
        return EXIT_INTERRUPTED
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    log_report(report)
    save_report(report, Path(config.report_dir), command)
    return EXIT_OK if report.consistent else EXIT_VIOLATION


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    handlers = setup_logging(Path(config.log_dir), args.command, verbose=args.verbose)
    try:
        log.info("=== kvprobe %s ===", args.command)
        log.info("Store: %s | Partitions: %d", config.store.url, config.partition_count)
        return asyncio.run(_main(config, args.command, getattr(args, "mode", "comprehensive")))
    except HarnessError as exc:
        log.error("FATAL: %s", exc)
        return EXIT_ERROR
    finally:
        close_logging(handlers)
