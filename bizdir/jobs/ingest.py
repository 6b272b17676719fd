"""Batch ingestion of place-search categories into the directory store."""

import argparse
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from bizdir.core.config import Settings, get_settings
from bizdir.core.exceptions import ConfigError, DirectoryError, NetworkError, PartialBatchFailure
from bizdir.core.progress import ProgressTracker
from bizdir.etl.transform import place_to_record
from bizdir.models import UpsertResult
from bizdir.storage.base import StorageAdapter
from bizdir.storage.factory import create_adapter
from bizdir.vendors import google_places

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], List[Dict[str, Any]]]
Emitter = Callable[[str], None]


class IngestionState(str, enum.Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILURE = "failure"
    COMPLETED = "completed"


# Every per-category outcome can advance to the next category or finish the batch.
_TRANSITIONS = {
    IngestionState.IDLE: {IngestionState.PROCESSING, IngestionState.COMPLETED},
    IngestionState.PROCESSING: {IngestionState.SUCCESS, IngestionState.FAILURE},
    IngestionState.SUCCESS: {IngestionState.PROCESSING, IngestionState.COMPLETED},
    IngestionState.FAILURE: {IngestionState.PROCESSING, IngestionState.COMPLETED},
    IngestionState.COMPLETED: set(),
}


@dataclass
class CategoryOutcome:
    query: str
    found: int = 0
    created: int = 0
    updated: int = 0
    record_errors: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class BatchSummary:
    batch_number: int
    outcomes: List[CategoryOutcome] = field(default_factory=list)
    final_count: Optional[int] = None
    status: str = IngestionState.COMPLETED.value

    @property
    def total_found(self) -> int:
        return sum(outcome.found for outcome in self.outcomes)

    @property
    def created(self) -> int:
        return sum(outcome.created for outcome in self.outcomes)

    @property
    def updated(self) -> int:
        return sum(outcome.updated for outcome in self.outcomes)

    @property
    def record_errors(self) -> int:
        return sum(outcome.record_errors for outcome in self.outcomes)

    @property
    def categories_succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)

    @property
    def categories_failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.succeeded)

    @property
    def errors(self) -> List[str]:
        return [f"{outcome.query}: {outcome.error}" for outcome in self.outcomes if not outcome.succeeded]

    def raise_for_failures(self) -> None:
        if self.categories_failed:
            raise PartialBatchFailure(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchNumber": self.batch_number,
            "status": self.status,
            "totalFound": self.total_found,
            "created": self.created,
            "updated": self.updated,
            "categoriesSucceeded": self.categories_succeeded,
            "categoriesFailed": self.categories_failed,
            "recordErrors": self.record_errors,
            "errors": self.errors,
            "finalCount": self.final_count,
        }


def google_places_fetcher(settings: Optional[Settings] = None) -> Fetcher:
    """Build a category fetcher backed by Places text search."""
    settings = settings or get_settings()
    api_key = settings.google_api_key
    if not api_key:
        raise ConfigError("GOOGLE_API_KEY is required")

    def fetch(query: str) -> List[Dict[str, Any]]:
        response = google_places.text_search(
            query=query,
            api_key=api_key,
            location=settings.search_location,
            radius=settings.search_radius,
            timeout=settings.request_timeout,
        )
        results = response.get("results", [])[: settings.ingest_max_results]
        if not settings.ingest_fetch_details:
            return results

        enriched = []
        for result in results:
            place_id = result.get("place_id")
            if not place_id:
                enriched.append(result)
                continue
            try:
                details = google_places.place_details(place_id, api_key, timeout=settings.request_timeout)
            except NetworkError as exc:
                logger.warning("Failed to fetch details for %s: %s", place_id, exc)
                enriched.append(result)
                continue
            enriched.append({**result, **details})
        return enriched

    return fetch


class IngestionOrchestrator:
    """Runs one batch over a fixed, ordered list of category queries.

    A failing category is recorded and skipped; the batch always reaches the
    completed state. Every fetched record is upserted on its own, so one bad
    record costs one error, not the category.
    """

    def __init__(
        self,
        adapter: StorageAdapter,
        fetch: Fetcher,
        *,
        tracker: Optional[ProgressTracker] = None,
        delay_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        emit: Optional[Emitter] = None,
    ) -> None:
        self.adapter = adapter
        self.fetch = fetch
        self.tracker = tracker or ProgressTracker()
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.emit = emit or (lambda line: logger.info("%s", line.rstrip()))
        self.state = IngestionState.IDLE

    def _transition(self, new_state: IngestionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal ingestion transition {self.state.value} -> {new_state.value}")
        logger.debug("Ingestion state %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def run(self, categories: Iterable[str], batch_number: int = 1) -> BatchSummary:
        queries = [query for query in categories if query and query.strip()]
        total = len(queries)
        self.state = IngestionState.IDLE
        summary = BatchSummary(batch_number=batch_number)
        self.tracker.start_batch(batch_number, total_businesses=0)

        self.emit(f"Fetching and saving {total} business categories (batch {batch_number})...\n\n")
        business_index = 0
        for position, query in enumerate(queries, start=1):
            self._transition(IngestionState.PROCESSING)
            self.emit(f'[{position}/{total}] Searching: "{query}"...\n')
            self.tracker.update(current_step=f"Searching {query}", status="processing")

            outcome = CategoryOutcome(query=query)
            summary.outcomes.append(outcome)
            try:
                results = self.fetch(query)
            except Exception as exc:  # noqa: BLE001
                outcome.error = NetworkError.from_exception(exc).message
                logger.warning("Category %r failed: %s", query, exc)
                self.tracker.add_error(query, outcome.error)
                self._transition(IngestionState.FAILURE)
                self.emit(f'[{position}/{total}] "{query}": Error - {outcome.error}\n')
            else:
                outcome.found = len(results)
                current = self.tracker.current
                self.tracker.set_total((current.total_businesses if current else 0) + len(results))
                for raw in results:
                    business_index += 1
                    self._ingest_record(raw, query, business_index, outcome)
                self._transition(IngestionState.SUCCESS)
                self.emit(
                    f'[{position}/{total}] "{query}": Found {outcome.found}, '
                    f"created {outcome.created}, updated {outcome.updated}, errors {outcome.record_errors}\n"
                )

            if position < total:
                self.emit(f"Waiting {self.delay_seconds:g} seconds...\n\n")
                self.sleep(self.delay_seconds)

        self._transition(IngestionState.COMPLETED)
        try:
            summary.final_count = self.adapter.count()
        except DirectoryError as exc:
            logger.warning("Could not count stored businesses after batch: %s", exc)
        self.tracker.complete_batch()
        self._emit_summary(summary)
        logger.info(
            "Batch %d completed: found=%d succeeded=%d failed=%d",
            batch_number,
            summary.total_found,
            summary.categories_succeeded,
            summary.categories_failed,
        )
        return summary

    def _ingest_record(self, raw: Dict[str, Any], query: str, index: int, outcome: CategoryOutcome) -> None:
        name = str(raw.get("name") or raw.get("place_id") or f"record {index}")
        self.tracker.update_business(index, name, step="Saving")
        try:
            business = place_to_record(raw, category=query)
            result = self.adapter.upsert(business)
        except Exception as exc:  # noqa: BLE001
            outcome.record_errors += 1
            logger.warning("Failed to upsert %s: %s", name, exc)
            self.tracker.add_error(name, str(exc))
            return
        if result is UpsertResult.CREATED:
            outcome.created += 1
        else:
            outcome.updated += 1
        self.tracker.add_success(logo_added=business.logo is not None, photos_added=len(business.photos))

    def _emit_summary(self, summary: BatchSummary) -> None:
        self.emit("\nIngestion complete\n")
        self.emit(f"Total businesses found: {summary.total_found}\n")
        self.emit(f"Created: {summary.created}, updated: {summary.updated}\n")
        self.emit(
            f"Categories succeeded: {summary.categories_succeeded}, failed: {summary.categories_failed}\n"
        )
        if summary.final_count is not None:
            self.emit(f"Current database total: {summary.final_count} businesses\n")
        for error in summary.errors:
            self.emit(f"Error: {error}\n")


def run_ingest_job(
    *,
    categories: Optional[List[str]] = None,
    delay_seconds: Optional[float] = None,
    batch_number: int = 1,
    tracker: Optional[ProgressTracker] = None,
) -> BatchSummary:
    settings = get_settings()
    fetch = google_places_fetcher(settings)
    adapter = create_adapter(settings)
    try:
        adapter.ensure_schema()
        orchestrator = IngestionOrchestrator(
            adapter,
            fetch,
            tracker=tracker,
            delay_seconds=settings.ingest_delay_seconds if delay_seconds is None else delay_seconds,
        )
        return orchestrator.run(categories or list(settings.ingest_categories), batch_number=batch_number)
    finally:
        adapter.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ingest Google Places categories into the business directory")
    parser.add_argument(
        "--category",
        dest="categories",
        action="append",
        help="Category query to ingest; repeat for several (defaults to INGEST_CATEGORIES)",
    )
    parser.add_argument("--delay", dest="delay_seconds", type=float, help="Seconds to wait between categories")
    parser.add_argument("--batch-number", dest="batch_number", type=int, default=1, help="Batch number to report")
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args()

    try:
        summary = run_ingest_job(
            categories=args.categories,
            delay_seconds=args.delay_seconds,
            batch_number=args.batch_number,
        )
        summary.raise_for_failures()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except PartialBatchFailure as exc:
        logger.error("Batch finished with failures: %s", "; ".join(exc.summary.errors))
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
