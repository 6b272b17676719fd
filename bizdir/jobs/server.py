"""HTTP entrypoint serving directory reads, writes, stats and streaming ingestion."""

from __future__ import annotations

import json
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from flask import Flask, Response, jsonify, request

from bizdir.core.config import get_settings
from bizdir.core.exceptions import ConfigError, StorageUnavailable, ValidationError
from bizdir.core.progress import ProgressTracker
from bizdir.core.query import QueryEngine
from bizdir.core.stats import StatsAggregator
from bizdir.etl.transform import normalize_record
from bizdir.jobs.ingest import IngestionOrchestrator, google_places_fetcher
from bizdir.storage.base import StorageAdapter
from bizdir.storage.factory import create_adapter

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App, executor & shared state ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=1)
_tracker = ProgressTracker()
# Held from submit until the batch finishes; one batch owns the tracker at a time.
_batch_lock = threading.Lock()
_adapter: Optional[StorageAdapter] = None
_adapter_lock = threading.Lock()

_TRUE_VALUES = {"1", "true", "yes"}
_KEEPALIVE_SECONDS = 15


def get_adapter() -> StorageAdapter:
    """Create the configured storage adapter once and share it across requests."""
    global _adapter
    with _adapter_lock:
        if _adapter is None:
            _adapter = create_adapter(get_settings())
        return _adapter


def _error(error: str, message: str, status: int) -> Any:
    return jsonify({"error": error, "message": message}), status


def _positive_int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


# ---------- Routes ----------


@app.errorhandler(405)
def method_not_allowed(_: Exception) -> Any:
    return jsonify({"error": "Method not allowed"}), 405


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/health")
def healthcheck() -> Any:
    """Report whether the active store answers a count query."""
    try:
        adapter = get_adapter()
        business_count = adapter.count()
    except Exception as exc:  # noqa: BLE001
        logger.error("Health check failed: %s", exc)
        return (
            jsonify(
                {
                    "status": "error",
                    "database": "disconnected",
                    "backend": get_settings().storage_backend,
                    "error": str(exc),
                }
            ),
            500,
        )
    return (
        jsonify(
            {
                "status": "healthy",
                "database": "connected",
                "backend": adapter.name,
                "businessCount": business_count,
            }
        ),
        200,
    )


@app.get("/businesses")
def list_businesses() -> Any:
    """
    Paginated listing.
    Query params: page, limit (max 200), category, search, all (ignore pagination).
    """
    try:
        page = _positive_int_arg("page", 1)
        limit = _positive_int_arg("limit", 50)
    except ValueError as exc:
        return _error("Invalid request", str(exc), 400)

    fetch_all = (request.args.get("all") or "").strip().lower() in _TRUE_VALUES

    try:
        result = QueryEngine(get_adapter()).list_businesses(
            category=request.args.get("category"),
            search=request.args.get("search"),
            page=page,
            limit=limit,
            all=fetch_all,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Database query failed: %s", exc)
        return _error("Database query failed", str(exc), 500)

    return jsonify(result.to_dict()), 200


@app.get("/businesses/<business_id>")
def get_business(business_id: str) -> Any:
    try:
        business = QueryEngine(get_adapter()).get_business(business_id)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Database query failed: %s", exc)
        return _error("Database query failed", str(exc), 500)
    if business is None:
        return _error("Not found", f"business {business_id} does not exist", 404)
    return jsonify(business.to_dict()), 200


@app.post("/businesses")
def save_business() -> Any:
    """Upsert one business. The payload must carry at least id and name."""
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error("Invalid business", "request body must be a JSON object", 400)

    try:
        business = normalize_record(payload, require_name=True)
    except ValidationError as exc:
        return _error("Invalid business", str(exc), 400)

    try:
        result = get_adapter().upsert(business)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to save business %s: %s", business.id, exc)
        return _error("Failed to save business", str(exc), 500)

    logger.info("Saved business %s (%s)", business.id, result.value)
    return jsonify({"success": True, "businessId": business.id, "result": result.value}), 200


@app.get("/stats")
def stats() -> Any:
    try:
        result = StatsAggregator(get_adapter()).get_stats()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Stats query failed: %s", exc)
        return _error("Failed to fetch stats", str(exc), 500)
    return jsonify(result.to_dict()), 200


@app.post("/stats/refresh")
def refresh_stats() -> Any:
    try:
        result = StatsAggregator(get_adapter()).refresh()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Stats refresh failed: %s", exc)
        return _error("Failed to refresh stats", str(exc), 500)
    return jsonify(result.to_dict()), 200


@app.post("/ingest")
def ingest() -> Any:
    """
    Run one ingestion batch in the background and stream its progress lines.
    Optional JSON fields: categories (list of queries), batchNumber (int).
    The response closes once every category has been processed.
    Answers 409 while another batch is still running.
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    settings = get_settings()

    categories = payload.get("categories") or list(settings.ingest_categories)
    if not isinstance(categories, list) or not all(isinstance(item, str) for item in categories):
        return _error("Invalid request", "categories must be a list of strings", 400)
    try:
        batch_number = int(payload.get("batchNumber", 1))
    except (TypeError, ValueError):
        return _error("Invalid request", "batchNumber must be numeric", 400)

    try:
        fetch = google_places_fetcher(settings)
        adapter = get_adapter()
    except (ConfigError, StorageUnavailable) as exc:
        logger.error("Ingestion unavailable: %s", exc)
        return _error("Ingestion unavailable", str(exc), 500)

    if not _batch_lock.acquire(blocking=False):
        logger.warning("Rejected ingestion batch %d: another batch is running", batch_number)
        return _error("Ingestion in progress", "wait for the running batch to finish", 409)

    lines: "queue.Queue[Optional[str]]" = queue.Queue()
    orchestrator = IngestionOrchestrator(
        adapter,
        fetch,
        tracker=_tracker,
        delay_seconds=settings.ingest_delay_seconds,
        emit=lines.put,
    )
    logger.info("Starting ingestion batch %d over %d categories", batch_number, len(categories))
    try:
        _executor.submit(_run_batch_safe, orchestrator, categories, batch_number, lines)
    except RuntimeError:
        _batch_lock.release()
        raise

    def generate():
        while True:
            line = lines.get()
            if line is None:
                return
            yield line

    return Response(generate(), mimetype="text/plain", headers={"Cache-Control": "no-cache"})


@app.get("/ingest/status")
def ingest_status() -> Any:
    state = _tracker.current
    return jsonify({"progress": state.to_dict() if state is not None else None}), 200


@app.get("/ingest/progress")
def ingest_progress() -> Any:
    """Server-sent events with every progress snapshot until the batch completes."""
    updates: "queue.Queue" = queue.Queue()
    unsubscribe = _tracker.subscribe(updates.put)

    def generate():
        try:
            while True:
                try:
                    state = updates.get(timeout=_KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"data: {json.dumps(state.to_dict())}\n\n"
                if state.status == "completed":
                    return
        finally:
            unsubscribe()

    return Response(generate(), mimetype="text/event-stream", headers={"Cache-Control": "no-cache"})


# ---------- Internals ----------


def _run_batch_safe(
    orchestrator: IngestionOrchestrator,
    categories: List[str],
    batch_number: int,
    lines: "queue.Queue[Optional[str]]",
) -> None:
    try:
        orchestrator.run(categories, batch_number=batch_number)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Ingestion batch failed: %s", exc)
        lines.put(f"\nFATAL ERROR: {exc}\n")
    finally:
        _batch_lock.release()
        lines.put(None)


def main() -> None:
    settings = get_settings()
    try:
        get_adapter().ensure_schema()
    except StorageUnavailable as exc:
        logger.error("Storage not ready at boot: %s", exc)

    port = settings.worker_port
    logger.info("[BOOT] Binding on 0.0.0.0:%d (backend=%s)", port, settings.storage_backend)
    try:
        app.run(host="0.0.0.0", port=port, threaded=True)
    finally:
        _executor.shutdown(wait=False)
        get_adapter().close()


if __name__ == "__main__":
    main()
