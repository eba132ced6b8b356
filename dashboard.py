# dashboard.py
from datetime import timedelta
from html import escape
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from config import SchedulerConfig
from errors import JobNotFoundError, ValidationError
from fees import FeeEstimator
from jobs import JobService, idempotency_tag, time_until
from ledger import Web3Ledger
from models import Asset, JobStatus, to_iso, utcnow
from oracle import CoinGeckoOracle
from storage import Storage


# ---------- Request bodies ----------
class AssetIn(BaseModel):
    symbol: str = "ETH"
    decimals: int = 18
    isNative: bool = True
    contractAddress: Optional[str] = None

    def to_asset(self) -> Asset:
        if self.isNative:
            return Asset.native(self.symbol)
        return Asset.token(self.symbol, self.contractAddress, self.decimals)


class ScheduleIn(BaseModel):
    ownerAddress: str
    recipientAddress: str
    amount: str
    scheduledFor: str
    frequency: str = "once"
    maxExecutions: Optional[int] = None
    asset: AssetIn = Field(default_factory=AssetIn)
    description: Optional[str] = None


# ---------- App wiring ----------
def create_app(db: Optional[Storage] = None, fee_estimator=None, cfg: Optional[SchedulerConfig] = None) -> FastAPI:
    app = FastAPI(title="schedctl dashboard")
    app.state.cfg = cfg
    app.state.db = db
    app.state.fee_estimator = fee_estimator

    @app.exception_handler(ValidationError)
    async def validation_failed(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc), "field": exc.field})

    @app.exception_handler(JobNotFoundError)
    async def not_found(request: Request, exc: JobNotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    _register_pages(app)
    _register_api(app)
    return app


def get_cfg(request: Request) -> SchedulerConfig:
    state = request.app.state
    if state.cfg is None:
        state.cfg = SchedulerConfig.from_env()
    return state.cfg


def get_db(request: Request) -> Storage:
    state = request.app.state
    if state.db is None:
        base = get_cfg(request)
        state.db = Storage(base.db_path)
        state.cfg = base.with_overrides(state.db)
    return state.db


def get_service(request: Request, db: Storage = Depends(get_db)) -> JobService:
    state = request.app.state
    if state.fee_estimator is None:
        cfg = get_cfg(request)
        if cfg.rpc_url:
            oracle = CoinGeckoOracle.from_config(cfg) if cfg.price_api_url else None
            state.fee_estimator = FeeEstimator.from_config(cfg, Web3Ledger.from_config(cfg), oracle)
    return JobService(db, state.fee_estimator)


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  .navbar a:hover { text-decoration: underline; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  tr:hover { background-color: #e0f7fa; }
  canvas { margin-top: 20px; display: block; max-width: 800px; }
  a { color: #1976D2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str, include_chart_js: bool = False) -> str:
    script_tag = '<script src="https://cdn.jsdelivr.net/npm/chart.js"></script>' if include_chart_js else ''
    return f"""
    <html>
    <head>
      <title>{title}</title>
      {script_tag}
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">🏠 Home</a>
        <a href="/metrics">📈 Metrics</a>
        <a href="/failed">❌ Failed</a>
        <a href="/config">⚙ Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _schedule_row(job) -> str:
    nxt = to_iso(job.next_execution) if job.next_execution else "-"
    return (f"<tr><td><a href='/schedule/{job.schedule_id}'>{job.schedule_id}</a></td>"
            f"<td>{job.amount} {escape(job.asset.symbol)}</td><td>{job.recipient_address}</td>"
            f"<td>{job.frequency.value}</td><td>{job.status.value}</td>"
            f"<td>{job.execution_count}/{job.max_executions}</td><td>{nxt}</td></tr>")


SCHEDULE_HEADER = ("<tr><th>ID</th><th>Amount</th><th>Recipient</th><th>Frequency</th>"
                   "<th>Status</th><th>Runs</th><th>Next execution</th></tr>")


def _metrics(db: Storage) -> dict:
    counts = db.count_by_status()
    stats = db.execution_stats()
    data = {status.value: counts.get(status.value, 0) for status in JobStatus}
    data.update(stats)
    return data


def _register_pages(app: FastAPI):

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home(db: Storage = Depends(get_db)):
        jobs = db.list_jobs(limit=50)
        table_html = "<h2>Recent schedules</h2><table>" + SCHEDULE_HEADER
        table_html += "".join(_schedule_row(job) for job in jobs)
        table_html += "</table>"
        if not jobs:
            table_html += "<p class='muted'>No schedules yet. Use `schedctl create` or POST /api/schedules.</p>"

        charts_html = """
          <h2>Schedule states</h2>
          <canvas id="statusChart"></canvas>

          <h2>Fees paid per day</h2>
          <canvas id="feeChart"></canvas>

          <script>
            async function loadCharts() {
              const resStates = await fetch('/metrics/json');
              const dataStates = await resStates.json();

              new Chart(document.getElementById('statusChart'), {
                type: 'pie',
                data: {
                  labels: ['Active', 'Processing', 'Completed', 'Cancelled', 'Failed'],
                  datasets: [{
                    data: [dataStates.active, dataStates.processing, dataStates.completed,
                           dataStates.cancelled, dataStates.failed],
                    backgroundColor: ['#2196F3', '#9C27B0', '#4CAF50', '#9E9E9E', '#F44336']
                  }]
                }
              });

              const resFees = await fetch('/metrics/fees');
              const dataFees = await resFees.json();

              new Chart(document.getElementById('feeChart'), {
                type: 'line',
                data: {
                  labels: dataFees.days,
                  datasets: [{
                    label: 'Fees paid (native)',
                    data: dataFees.costs,
                    borderColor: '#2196F3',
                    backgroundColor: '#BBDEFB',
                    fill: true
                  }]
                },
                options: {
                  responsive: true,
                  maintainAspectRatio: false,
                  scales: { y: { beginAtZero: true } }
                }
              });
            }
            loadCharts();
          </script>
        """
        return page("📊 Scheduled Transfers", table_html + charts_html, include_chart_js=True)

    # ---------- Metrics ----------
    @app.get("/metrics", response_class=HTMLResponse)
    def metrics_page(db: Storage = Depends(get_db)):
        m = _metrics(db)
        avg_gas = f"{m['avg_gas_used']:.0f}" if m["avg_gas_used"] is not None else "N/A"
        fiat = f"${m['total_cost_in_fiat']:.2f}" if m["total_cost_in_fiat"] is not None else "N/A"
        cards = f"""
          <div class="cards">
            <div class="card"><h3>Active</h3><p>{m['active']}</p></div>
            <div class="card"><h3>Processing</h3><p>{m['processing']}</p></div>
            <div class="card"><h3>Completed</h3><p>{m['completed']}</p></div>
            <div class="card"><h3>Failed</h3><p>{m['failed']}</p></div>
            <div class="card"><h3>Confirmed transfers</h3><p>{m['confirmed_executions']}</p></div>
            <div class="card"><h3>Avg gas used</h3><p>{avg_gas}</p></div>
            <div class="card"><h3>Fees paid</h3><p>{m['total_cost_in_asset']:.6f} ({fiat})</p></div>
          </div>
          <p class="muted">Tip: Use the CLI "metrics" command for scriptable outputs.</p>
        """
        return page("📈 Metrics", cards)

    @app.get("/metrics/json", response_class=JSONResponse)
    def metrics_json(db: Storage = Depends(get_db)):
        return _metrics(db)

    @app.get("/metrics/fees", response_class=JSONResponse)
    def metrics_fees(db: Storage = Depends(get_db)):
        totals = {}
        for r in db.list_executions(limit=1000):
            if r.ok and r.cost_in_asset is not None:
                day = to_iso(r.executed_at)[:10]
                totals[day] = totals.get(day, 0.0) + float(r.cost_in_asset)
        days = sorted(totals)
        return {"days": days, "costs": [round(totals[d], 8) for d in days]}

    # ---------- Failed ----------
    @app.get("/failed", response_class=HTMLResponse)
    def failed_page(db: Storage = Depends(get_db)):
        jobs = db.list_jobs(status=JobStatus.FAILED)
        body = """
          <h2>Failed schedules</h2>
          <table>
            <tr><th>ID</th><th>Amount</th><th>Recipient</th><th>Runs</th><th>Failed at</th><th>Error</th></tr>
        """
        if not jobs:
            body += "</table><p class='muted'>No failed schedules.</p>"
        else:
            for job in jobs:
                body += (f"<tr><td><a href='/schedule/{job.schedule_id}'>{job.schedule_id}</a></td>"
                         f"<td>{job.amount} {escape(job.asset.symbol)}</td><td>{job.recipient_address}</td>"
                         f"<td>{job.execution_count}/{job.max_executions}</td><td>{to_iso(job.failed_at) or '-'}</td>"
                         f"<td>{escape(job.last_error or '-')}</td></tr>")
            body += "</table><p class='muted'>Failed schedules are never retried; the owner must create a new one.</p>"
        return page("❌ Failed Schedules", body)

    # ---------- Config ----------
    @app.get("/config", response_class=HTMLResponse)
    def config_page(db: Storage = Depends(get_db)):
        rows = db.list_config()
        body = """
          <h2>Runtime configuration</h2>
          <table>
            <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
        """
        if not rows:
            body += "</table><p class='muted'>No config entries found.</p>"
        else:
            for r in rows:
                body += f"<tr><td>{escape(r['key'])}</td><td>{escape(r['value'])}</td><td>{r['updated_at']}</td></tr>"
            body += "</table><p class='muted'>Use CLI config set/get to manage values.</p>"
        return page("⚙ Config", body)

    # ---------- Schedule detail ----------
    @app.get("/schedule/{schedule_id}", response_class=HTMLResponse)
    def schedule_detail(schedule_id: str, request: Request, db: Storage = Depends(get_db)):
        job = db.get(schedule_id)
        if not job:
            return HTMLResponse(page("❌ Schedule not found", f"<p>Schedule {escape(schedule_id)} not found.</p>"),
                                status_code=404)

        explorer = get_cfg(request).explorer_url.rstrip("/")
        nxt = f"{to_iso(job.next_execution)} ({time_until(job.next_execution)})" if job.next_execution else "-"
        fee = job.estimated_fee
        fee_html = (f"{fee.cost_in_asset} native, gas={fee.gas_units}, congestion={fee.congestion_level}"
                    if fee else "-")

        history = "<table><tr><th>Executed</th><th>Result</th><th>Tx</th><th>Gas used</th><th>Cost</th><th>By</th></tr>"
        for r in db.list_executions(schedule_id):
            tx = f"<a href='{explorer}/tx/{r.tx_hash}'>{r.tx_hash[:18]}…</a>" if r.tx_hash else "-"
            result = "✅ confirmed" if r.ok else f"❌ {escape(r.error or '')}"
            cost = f"{r.cost_in_asset}" if r.cost_in_asset is not None else "-"
            if r.cost_in_fiat is not None:
                cost += f" (${r.cost_in_fiat})"
            history += (f"<tr><td>{to_iso(r.executed_at)}</td><td>{result}</td><td>{tx}</td>"
                        f"<td>{r.gas_used or '-'}</td><td>{cost}</td><td>{r.executor_id}</td></tr>")
        history += "</table>"

        body = f"""
          <h2>Schedule {job.schedule_id}</h2>
          <div class="cards">
            <div class="card"><b>Status</b><p>{job.status.value}</p></div>
            <div class="card"><b>Amount</b><p>{job.amount} {escape(job.asset.symbol)}</p></div>
            <div class="card"><b>Frequency</b><p>{job.frequency.value}</p></div>
            <div class="card"><b>Runs</b><p>{job.execution_count}/{job.max_executions}</p></div>
          </div>

          <h3>Parties</h3>
          <table>
            <tr><th>Owner</th><td>{job.owner_address}</td></tr>
            <tr><th>Recipient</th><td>{job.recipient_address}</td></tr>
            <tr><th>Token contract</th><td>{job.asset.contract_address or 'native'}</td></tr>
          </table>

          <h3>Timing</h3>
          <table>
            <tr><th>Created</th><td>{to_iso(job.created_at)}</td></tr>
            <tr><th>Scheduled for</th><td>{to_iso(job.scheduled_for)}</td></tr>
            <tr><th>Next execution</th><td>{nxt}</td></tr>
            <tr><th>Last execution</th><td>{to_iso(job.last_execution_at) or '-'}</td></tr>
            <tr><th>Claimed by</th><td>{job.processing_by or '-'}</td></tr>
          </table>

          <h3>Estimated fee at creation</h3>
          <p class="muted">{fee_html}</p>

          <h3>Error</h3>
          <pre>{escape(job.last_error or '-')}</pre>

          <h3>Execution history</h3>
          {history}

          <p class="muted">Description: {escape(job.description or '-')}<br>
          Idempotency tag: {idempotency_tag(job.schedule_id)}</p>
        """
        return page(f"🔎 Schedule {job.schedule_id}", body)


def _register_api(app: FastAPI):

    @app.post("/api/schedules", status_code=201)
    def create_schedule(body: ScheduleIn, service: JobService = Depends(get_service)):
        schedule_id = service.create_job(
            body.asset.to_asset(), body.ownerAddress, body.recipientAddress, body.amount,
            body.scheduledFor, body.frequency, body.maxExecutions, body.description,
        )
        return service.get_job(schedule_id).to_dict()

    @app.post("/api/schedules/preview")
    def preview_schedule(body: ScheduleIn, count: int = Query(5, ge=1, le=50),
                         service: JobService = Depends(get_service)):
        result = service.preview_job(
            body.asset.to_asset(), body.ownerAddress, body.recipientAddress, body.amount,
            body.scheduledFor, body.frequency, body.maxExecutions, count,
        )
        return result.to_dict()

    @app.get("/api/schedules/due")
    def due_schedules(within: int = Query(300, ge=0), db: Storage = Depends(get_db)):
        jobs = db.find_due(utcnow(), timedelta(seconds=within))
        return {"count": len(jobs), "schedules": [job.to_dict() for job in jobs]}

    @app.get("/api/schedules/{schedule_id}")
    def get_schedule(schedule_id: str, service: JobService = Depends(get_service)):
        job = service.get_job(schedule_id)
        data = job.to_dict()
        data["idempotencyTag"] = idempotency_tag(job.schedule_id)
        return data

    @app.post("/api/schedules/{schedule_id}/cancel")
    def cancel_schedule(schedule_id: str, service: JobService = Depends(get_service)):
        cancelled = service.cancel_job(schedule_id)
        job = service.get_job(schedule_id)
        status_code = 200 if cancelled else 409
        return JSONResponse(status_code=status_code,
                            content={"cancelled": cancelled, "status": job.status.value})


app = create_app()
