"""
app.py - Drip clinic weekly metrics API.
"""

import json
import os
import logging
import shutil
import tempfile
import threading
from datetime import datetime

from flask import Flask, jsonify, request
from apscheduler.schedulers.background import BackgroundScheduler
from werkzeug.utils import secure_filename

from database import (
    count_registry, get_flagged_services, get_recent_uploads, get_recent_weeks,
    get_unmapped_services, get_weekly_metrics, init_db, list_weeks,
)
from errors import PipelineDefect, StructuralError
from pipeline import run_ingestion
from service_categories import MEMBERSHIP_TYPES

logging.basicConfig(level=logging.INFO,
                    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger("clinic")

MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "25"))
REFRESH_MINUTES = int(os.environ.get("REFRESH_MINUTES", "15"))
DASHBOARD_WEEKS = 12

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_MB * 1024 * 1024

init_db()

# ── Redis ────────────────────────────────────────────────────────────────────
REDIS_KEY = "clinic:dashboard"


def _get_redis():
    url = os.environ.get("REDIS_URL")
    if not url:
        return None
    try:
        import redis as r
        client = r.from_url(url, decode_responses=True, socket_timeout=5)
        client.ping()
        return client
    except Exception as e:
        logger.warning("Redis unavailable: %s", e)
        return None


# ── Dashboard cache ──────────────────────────────────────────────────────────
def build_dashboard():
    weeks = get_recent_weeks(DASHBOARD_WEEKS)
    return {
        "latest": weeks[0] if weeks else None,
        "weeks": weeks,
        "generated_at": datetime.now().isoformat(),
    }


class DashboardCache:
    """Serialized dashboard payload, mirrored to a Redis hash when REDIS_URL is set.

    A fresh process serves the mirrored copy until its first refresh, so a
    restart does not wait on the database.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.payload = None
        self.refreshed_at = None

    def snapshot(self):
        with self._lock:
            return self.payload, self.refreshed_at

    def _store(self, payload, refreshed_at):
        with self._lock:
            self.payload = payload
            self.refreshed_at = refreshed_at

    def refresh(self):
        try:
            data = build_dashboard()
            payload = json.dumps(data, separators=(",", ":"), default=str)
            self._store(payload, datetime.now())
            self._mirror(payload)
            logger.info("Dashboard ready: %d bytes, %d weeks", len(payload), len(data["weeks"]))
        except Exception:
            logger.exception("Dashboard refresh failed")

    def ensure_loaded(self):
        if self.snapshot()[0] is not None:
            return
        payload, refreshed_at = self._restore()
        if payload:
            self._store(payload, refreshed_at or datetime.now())
            logger.info("Serving dashboard from Redis (refreshed %s)", refreshed_at)
            return
        self.refresh()

    def _mirror(self, payload):
        client = _get_redis()
        if not client:
            return
        try:
            client.hset(REDIS_KEY, mapping={
                "payload": payload,
                "refreshed_at": datetime.now().isoformat(),
            })
        except Exception as e:
            logger.warning("Redis save error: %s", e)

    def _restore(self):
        client = _get_redis()
        if not client:
            return None, None
        try:
            cached = client.hgetall(REDIS_KEY)
        except Exception as e:
            logger.warning("Redis load error: %s", e)
            return None, None
        ts = cached.get("refreshed_at")
        return cached.get("payload"), datetime.fromisoformat(ts) if ts else None


cache = DashboardCache()


# ── Upload ───────────────────────────────────────────────────────────────────
def _save_upload(storage, tmpdir):
    name = secure_filename(storage.filename or "") or "upload"
    path = os.path.join(tmpdir, name)
    storage.save(path)
    return path


@app.route("/api/upload", methods=["POST"])
def api_upload():
    revenue = request.files.get("revenueFile")
    roster = request.files.get("membershipFile")
    if not revenue and not roster:
        return jsonify({"error": "No file uploaded (expected revenueFile and/or membershipFile)"}), 400

    tmpdir = tempfile.mkdtemp(prefix="clinic-upload-")
    try:
        revenue_path = _save_upload(revenue, tmpdir) if revenue else None
        roster_path = _save_upload(roster, tmpdir) if roster else None
        summary = run_ingestion(revenue_path, roster_path)
    except StructuralError as e:
        return jsonify(e.to_dict()), 422
    except PipelineDefect as e:
        logger.exception("Pipeline defect during upload")
        return jsonify(e.to_dict()), 500
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)

    cache.refresh()
    return jsonify(summary), 201


# ── Read API ─────────────────────────────────────────────────────────────────
@app.route("/api/weeks")
def api_weeks():
    return jsonify(list_weeks())


@app.route("/api/weeks/<week_start>")
def api_week(week_start):
    metrics = get_weekly_metrics(week_start)
    if not metrics:
        return jsonify({"error": f"No data for week starting {week_start}"}), 404
    metrics["flagged_for_review"] = get_flagged_services(week_start)
    metrics["unmapped_services"] = get_unmapped_services(week_start)
    return jsonify(metrics)


@app.route("/api/unmapped")
def api_unmapped():
    """Unmapped services, newest week first; ?week_start=YYYY-MM-DD narrows to one week."""
    return jsonify(get_unmapped_services(request.args.get("week_start")))


@app.route("/api/dashboard")
def api_dashboard():
    cache.ensure_loaded()
    js, ts = cache.snapshot()

    if js is None:
        return jsonify({"error": "Dashboard not available yet, retry in a few seconds"}), 503

    resp = app.response_class(response=js, status=200, mimetype="application/json")
    resp.headers["X-Last-Refresh"] = ts.isoformat() if ts else "never"
    resp.headers["Cache-Control"] = "public, max-age=60"
    return resp


@app.route("/api/status")
def api_status():
    payload, refreshed_at = cache.snapshot()
    registered = {kind: count_registry(kind) for kind in MEMBERSHIP_TYPES}
    registered["total"] = count_registry()
    return jsonify({
        "status": "ok",
        "loaded": payload is not None,
        "last_refresh": refreshed_at.isoformat() if refreshed_at else None,
        "registered_members": registered,
        "recent_uploads": get_recent_uploads(5),
    })


# ── Startup ──────────────────────────────────────────────────────────────────
port = int(os.environ.get("PORT", 8080))

scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(cache.refresh, "interval", minutes=REFRESH_MINUTES,
                  id="refresh", replace_existing=True)
scheduler.start()

if __name__ == "__main__":
    logger.info("Starting on port %d", port)
    app.run(host="0.0.0.0", port=port, debug=False)
