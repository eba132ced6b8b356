# cli.py
import logging
import threading
import time
from datetime import timedelta

import click

from config import SchedulerConfig, config_keys, parse_value
from errors import JobNotFoundError, ValidationError
from fees import FeeEstimator
from jobs import JobService, idempotency_tag, time_until
from keys import EnvKeySource
from ledger import Web3Ledger
from models import Asset, ExecutionRecord, Frequency, JobStatus, from_iso, to_iso, utcnow
from oracle import CoinGeckoOracle
from storage import Storage
from transfer import TransferExecutor
from worker import Executor, failure_patch, success_patch

logger = logging.getLogger("schedctl")

OPERATOR_ID = "operator"


# ---------------- Component wiring ----------------
def build_ledger(cfg):
    return Web3Ledger.from_config(cfg)


def build_oracle(cfg):
    return CoinGeckoOracle.from_config(cfg) if cfg.price_api_url else None


def build_key_source(cfg):
    return EnvKeySource()


def _open(ctx):
    """Store plus effective config (env < store config table < CLI flags)."""
    base = SchedulerConfig.from_env()
    db = Storage(ctx.obj.get("db_path") or base.db_path)
    return db, base.with_overrides(db, db_path=db.db_path)


def _estimator(cfg):
    if not cfg.rpc_url:
        return None
    return FeeEstimator.from_config(cfg, build_ledger(cfg), build_oracle(cfg))


def _executor(cfg, executor_id, stop_event=None, max_parallel=1):
    ledger = build_ledger(cfg)
    oracle = build_oracle(cfg)
    return Executor.from_config(
        cfg,
        Storage(cfg.db_path),
        FeeEstimator.from_config(cfg, ledger, oracle),
        TransferExecutor.from_config(cfg, ledger, oracle),
        build_key_source(cfg),
        executor_id=executor_id,
        stop_event=stop_event,
        max_parallel=max_parallel,
    )


def _parse_when(value):
    """ISO timestamp (UTC) or +N seconds from now."""
    if value.startswith("+"):
        return utcnow() + timedelta(seconds=int(value[1:]))
    return from_iso(value)


def _asset(symbol, token_address, decimals):
    if token_address:
        return Asset.token(symbol, token_address, decimals)
    return Asset.native(symbol)


def _fail(ctx, message):
    click.echo(f"❌ {message}")
    ctx.exit(1)


@click.group()
@click.option("--db", "db_path", default=None, help="SQLite job store (default: $SCHEDCTL_DB_PATH or schedules.db)")
@click.option("--log-level", default="WARNING",
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.pass_context
def cli(ctx, db_path, log_level):
    """schedctl - scheduled ledger transfers"""
    logging.basicConfig(level=getattr(logging, log_level.upper()),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# ---------------- Create / preview / cancel ----------------
def _job_options(func):
    options = [
        click.option("--from", "sender", required=True, help="Owner (paying) address"),
        click.option("--to", "recipient", required=True, help="Recipient address"),
        click.option("--amount", required=True, help="Amount in whole units, e.g. 1.5"),
        click.option("--run-at", required=True, help="ISO timestamp (UTC) or +seconds delay"),
        click.option("--frequency", default="once", type=click.Choice([f.value for f in Frequency])),
        click.option("--max-executions", default=None, type=int,
                     help="Limit for recurring jobs (once always runs one time)"),
        click.option("--symbol", default="ETH", help="Asset symbol"),
        click.option("--token-address", default=None, help="Token contract; omit for the native asset"),
        click.option("--decimals", default=18, type=int, help="Token decimals"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@_job_options
@click.option("--description", default=None, help="Free-text memo")
@click.pass_context
def create(ctx, sender, recipient, amount, run_at, frequency, max_executions, symbol, token_address, decimals,
           description):
    """Schedule a transfer"""
    db, cfg = _open(ctx)
    try:
        schedule_id = JobService(db, _estimator(cfg)).create_job(
            _asset(symbol, token_address, decimals), sender, recipient, amount, _parse_when(run_at),
            frequency, max_executions, description,
        )
    except (ValidationError, ValueError) as e:
        _fail(ctx, f"Invalid schedule: {e}")
    job = db.get(schedule_id)
    click.echo(f"✅ Scheduled {schedule_id} ({job.amount} {job.asset.symbol} -> {job.recipient_address}, "
               f"{job.frequency.value}, first run {to_iso(job.scheduled_for)}).")


@cli.command()
@_job_options
@click.option("--count", default=5, help="Number of upcoming executions to show")
@click.pass_context
def preview(ctx, sender, recipient, amount, run_at, frequency, max_executions, symbol, token_address, decimals,
            count):
    """Show fee estimate and upcoming executions without scheduling"""
    db, cfg = _open(ctx)
    try:
        result = JobService(db, _estimator(cfg)).preview_job(
            _asset(symbol, token_address, decimals), sender, recipient, amount, _parse_when(run_at),
            frequency, max_executions, count,
        )
    except (ValidationError, ValueError) as e:
        _fail(ctx, f"Invalid schedule: {e}")

    click.echo("🔍 Preview")
    quote = result.fee_quote
    if quote is None:
        click.echo("  Fee: unavailable (no RPC configured)")
    else:
        fiat = f"${quote.cost_in_fiat}" if quote.cost_in_fiat is not None else "unavailable"
        degraded = " (fallback)" if quote.degraded else ""
        click.echo(f"  Fee: {quote.cost_in_asset} native, {fiat} fiat, gas={quote.gas_units}, "
                   f"congestion={quote.congestion_level}{degraded}")
    click.echo("  Next executions:")
    for instant in result.next_instants:
        click.echo(f"    {to_iso(instant)}")


@cli.command()
@click.argument("schedule_id")
@click.pass_context
def cancel(ctx, schedule_id):
    """Cancel an active schedule"""
    db, _ = _open(ctx)
    try:
        cancelled = JobService(db).cancel_job(schedule_id)
    except JobNotFoundError as e:
        _fail(ctx, str(e))
    if not cancelled:
        _fail(ctx, f"Schedule {schedule_id} is {db.get(schedule_id).status.value} and cannot be cancelled.")
    click.echo(f"🛑 Schedule {schedule_id} cancelled.")


# ---------------- List / inspect ----------------
def _job_line(job):
    nxt = to_iso(job.next_execution) if job.next_execution else "-"
    return (f"{job.schedule_id} | {job.amount} {job.asset.symbol} -> {job.recipient_address} | "
            f"{job.frequency.value} | status={job.status.value} | "
            f"runs={job.execution_count}/{job.max_executions} | next={nxt}")


@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice([s.value for s in JobStatus]),
              help="Filter schedules by status")
@click.option("--limit", default=None, type=int)
@click.pass_context
def list_jobs(ctx, status, limit):
    """List schedules"""
    db, _ = _open(ctx)
    jobs = db.list_jobs(status=status, limit=limit)
    if not jobs:
        click.echo("No schedules found.")
        return
    for job in jobs:
        click.echo(_job_line(job))


@cli.command()
@click.argument("schedule_id")
@click.pass_context
def show(ctx, schedule_id):
    """Show details of a single schedule"""
    db, cfg = _open(ctx)
    job = db.get(schedule_id)
    if not job:
        _fail(ctx, f"Schedule {schedule_id} not found.")

    click.echo(f"🔎 Schedule {job.schedule_id}")
    click.echo(f"  Owner: {job.owner_address}")
    click.echo(f"  Recipient: {job.recipient_address}")
    asset = job.asset.symbol if job.asset.is_native else f"{job.asset.symbol} ({job.asset.contract_address})"
    click.echo(f"  Amount: {job.amount} {asset}")
    click.echo(f"  Frequency: {job.frequency.value}")
    click.echo(f"  Status: {job.status.value}")
    click.echo(f"  Executions: {job.execution_count}/{job.max_executions}")
    click.echo(f"  Scheduled for: {to_iso(job.scheduled_for)}")
    if job.next_execution:
        click.echo(f"  Next execution: {to_iso(job.next_execution)} ({time_until(job.next_execution)})")
    else:
        click.echo("  Next execution: -")
    click.echo(f"  Last execution: {to_iso(job.last_execution_at) or '-'}")
    if job.last_tx_hash:
        click.echo(f"  Last tx: {cfg.explorer_url.rstrip('/')}/tx/{job.last_tx_hash}")
    if job.status == JobStatus.PROCESSING:
        click.echo(f"  Claimed by: {job.processing_by} since {to_iso(job.processing_started)}")
    click.echo(f"  Error: {job.last_error or '-'}")
    click.echo(f"  Description: {job.description or '-'}")
    click.echo(f"  Idempotency tag: {idempotency_tag(job.schedule_id)}")
    click.echo(f"  Created: {to_iso(job.created_at)}")


@cli.command()
@click.argument("schedule_id")
@click.option("--limit", default=20)
@click.pass_context
def history(ctx, schedule_id, limit):
    """Show execution history of a schedule"""
    db, _ = _open(ctx)
    records = db.list_executions(schedule_id, limit=limit)
    if not records:
        click.echo(f"No executions recorded for {schedule_id}.")
        return
    for r in records:
        if r.ok:
            fiat = f", ${r.cost_in_fiat}" if r.cost_in_fiat is not None else ""
            click.echo(f"{to_iso(r.executed_at)} | ✅ tx={r.tx_hash} | block={r.block_number} | "
                       f"gas={r.gas_used} | cost={r.cost_in_asset}{fiat} | by={r.executor_id}")
        else:
            click.echo(f"{to_iso(r.executed_at)} | ❌ {r.error} | by={r.executor_id}")


@cli.command()
@click.pass_context
def status(ctx):
    """Show summary of schedule states"""
    db, _ = _open(ctx)
    counts = db.count_by_status()
    if not counts:
        click.echo("No schedules in the system yet.")
        return
    click.echo("📊 Schedule Status Summary:")
    for state, count in sorted(counts.items()):
        click.echo(f"  {state}: {count}")


@cli.command()
@click.pass_context
def metrics(ctx):
    """Show execution metrics summary"""
    db, _ = _open(ctx)
    counts = db.count_by_status()
    stats = db.execution_stats()

    click.echo("📈 Metrics Summary")
    for state in JobStatus:
        click.echo(f"  {state.value.capitalize()} schedules: {counts.get(state.value, 0)}")
    click.echo(f"  Confirmed transfers: {stats['confirmed_executions']}")
    click.echo(f"  Failed executions: {stats['failed_executions']}")
    avg_gas = stats["avg_gas_used"]
    click.echo(f"  Avg gas used: {avg_gas:.0f}" if avg_gas is not None else "  Avg gas used: N/A")
    click.echo(f"  Total fees paid: {stats['total_cost_in_asset']:.6f} native")
    fiat = stats["total_cost_in_fiat"]
    click.echo(f"  Total fees paid (fiat): ${fiat:.2f}" if fiat is not None else "  Total fees paid (fiat): N/A")


# ---------------- Executors ----------------
@cli.command()
@click.option("--count", default=1, help="Number of executors to start")
@click.option("--poll-interval", default=None, type=float, help="Idle polling interval (seconds) (uses config if set)")
@click.option("--due-tolerance", default=None, type=int, help="Claim jobs due within N seconds (uses config if set)")
@click.option("--max-parallel", default=1, help="Jobs each executor runs concurrently")
@click.pass_context
def worker(ctx, count, poll_interval, due_tolerance, max_parallel):
    """Start executors with graceful shutdown"""
    db, cfg = _open(ctx)
    db.close()
    cfg = cfg.with_overrides(None, poll_interval=poll_interval, due_tolerance_seconds=due_tolerance)

    stop_event = threading.Event()
    executors = []
    try:
        for i in range(count):
            ex = _executor(cfg, f"executor-{i+1}", stop_event, max_parallel)
            t = threading.Thread(target=ex.run, name=f"executor-thread-{i+1}", daemon=True)
            executors.append((ex, t))
    except ValueError as e:
        _fail(ctx, str(e))

    for ex, t in executors:
        click.echo(f"🚀 Starting {ex.executor_id} (poll={cfg.poll_interval}s, "
                   f"tolerance={cfg.due_tolerance_seconds}s, parallel={max_parallel})")
        t.start()

    click.echo("Press Ctrl+C to stop executors gracefully.")

    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        click.echo("\n🛑 Stopping executors ...")
        stop_event.set()
        for _, t in executors:
            t.join(timeout=cfg.confirmation_timeout + 5.0)
        click.echo("✅ Executors stopped cleanly.")


@cli.command()
@click.option("--executor-id", default="executor-tick")
@click.pass_context
def tick(ctx, executor_id):
    """Run a single polling cycle and exit"""
    db, cfg = _open(ctx)
    db.close()
    try:
        ex = _executor(cfg, executor_id)
    except ValueError as e:
        _fail(ctx, str(e))
    summary = ex.run_once()
    click.echo(" | ".join(f"{k}={v}" for k, v in summary.items()))


# ---------------- Failed schedules ----------------
@cli.group()
def failed():
    """Failed schedules (terminal, never retried)"""
    pass


@failed.command("list")
@click.pass_context
def failed_list(ctx):
    """List failed schedules"""
    db, _ = _open(ctx)
    jobs = db.list_jobs(status=JobStatus.FAILED)
    if not jobs:
        click.echo("No failed schedules.")
        return
    for job in jobs:
        click.echo(f"{_job_line(job)} | failed_at={to_iso(job.failed_at)} | error={job.last_error}")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for executors and defaults"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key, value):
    """Set a config key to a value"""
    if key not in config_keys():
        _fail(ctx, f"Unknown config key '{key}'. Known keys: {', '.join(config_keys())}")
    try:
        parse_value(key, value)
    except ValueError:
        _fail(ctx, f"Invalid value '{value}' for config key '{key}'.")
    db, _ = _open(ctx)
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_context
def config_get(ctx, key, default):
    """Get a config key"""
    db, _ = _open(ctx)
    value = db.get_config(key)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_context
def config_list(ctx):
    """List all config keys"""
    db, _ = _open(ctx)
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Rescue operations ----------------
@cli.group()
def rescue():
    """Manual recovery for schedules stuck in processing"""
    pass


@rescue.command("stuck")
@click.option("--older-than-seconds", default=None, type=int, help="Claimed more than N seconds ago (uses config if set)")
@click.pass_context
def rescue_stuck(ctx, older_than_seconds):
    """List schedules left in processing by an executor"""
    db, cfg = _open(ctx)
    if older_than_seconds is None:
        older_than_seconds = cfg.stuck_after_seconds
    jobs = db.find_stuck(utcnow() - timedelta(seconds=older_than_seconds))
    if not jobs:
        click.echo("No stuck schedules found.")
        return
    for job in jobs:
        click.echo(f"{job.schedule_id} | claimed by {job.processing_by} at {to_iso(job.processing_started)} | "
                   f"{job.amount} {job.asset.symbol} from {job.owner_address} -> {job.recipient_address}")
    click.echo("Check the owner's transactions on chain, then run `schedctl rescue resolve`.")


@rescue.command("resolve")
@click.argument("schedule_id")
@click.option("--executed", "outcome", flag_value="executed", help="The transfer is confirmed on chain")
@click.option("--failed", "outcome", flag_value="failed", help="The transfer never happened")
@click.option("--tx-hash", default=None, help="Hash of the confirmed transfer (required with --executed)")
@click.option("--reason", default="Resolved as failed by operator")
@click.pass_context
def rescue_resolve(ctx, schedule_id, outcome, tx_hash, reason):
    """Settle a stuck schedule after checking the chain"""
    if outcome is None:
        _fail(ctx, "Pass --executed or --failed.")
    if outcome == "executed" and not tx_hash:
        _fail(ctx, "--tx-hash is required with --executed.")

    db, _ = _open(ctx)
    job = db.get(schedule_id)
    if not job:
        _fail(ctx, f"Schedule {schedule_id} not found.")

    now = utcnow()
    if outcome == "executed":
        patch = success_patch(job, now, tx_hash)
        record = ExecutionRecord(schedule_id=schedule_id, executor_id=OPERATOR_ID, ok=True,
                                 executed_at=now, tx_hash=tx_hash)
    else:
        patch = failure_patch(reason, now)
        record = ExecutionRecord(schedule_id=schedule_id, executor_id=OPERATOR_ID, ok=False,
                                 executed_at=now, error=patch["last_error"])

    if not db.conditional_update(schedule_id, JobStatus.PROCESSING, patch):
        _fail(ctx, f"Schedule {schedule_id} is {job.status.value}, not processing; nothing changed.")
    db.record_execution(record)
    logger.warning("Operator resolved %s as %s (tx=%s)", schedule_id, outcome, tx_hash or "-")
    click.echo(f"🔧 Schedule {schedule_id} resolved: processing → {patch['status'].value}.")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
