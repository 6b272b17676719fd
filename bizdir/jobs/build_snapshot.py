"""CLI job that writes the static snapshot used by query-less deployments."""

import argparse
import json
import logging
from typing import Any, Dict, List, Optional

from bizdir.core.config import get_settings
from bizdir.core.exceptions import DirectoryError
from bizdir.etl.snapshot import Snapshot, build_snapshot, write_snapshot
from bizdir.storage.factory import create_adapter

logger = logging.getLogger(__name__)


def load_records(path: str) -> List[Dict[str, Any]]:
    """Read a JSON export: either a list of records or ``{"businesses": [...]}``."""
    with open(path, "r", encoding="utf-8") as fh:
        payload = json.load(fh)
    if isinstance(payload, dict):
        payload = payload.get("businesses")
    if not isinstance(payload, list):
        raise ValueError(f"{path} does not contain a businesses array")
    return payload


def run_build_snapshot_job(
    *,
    source: str,
    output_dir: Optional[str] = None,
    input_path: Optional[str] = None,
    chunk_size: Optional[int] = None,
) -> Snapshot:
    settings = get_settings()
    chunk_size = chunk_size or settings.snapshot_chunk_size
    output_dir = output_dir or settings.snapshot_dir

    if source == "file":
        if not input_path:
            raise ValueError("--input is required when --source=file")
        records = load_records(input_path)
    elif source == "db":
        adapter = create_adapter(settings)
        try:
            records = adapter.iter_all()
        finally:
            adapter.close()
    else:
        raise ValueError(f"unknown source {source!r}")

    logger.info("Building snapshot from %d records (chunk size %d)", len(records), chunk_size)
    snapshot = build_snapshot(records, chunk_size=chunk_size)
    write_snapshot(snapshot, output_dir)
    return snapshot


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Split the business list into static chunk files")
    parser.add_argument("--source", choices=("file", "db"), default="db", help="Where to read businesses from")
    parser.add_argument("--input", dest="input_path", help="JSON file with businesses (for --source=file)")
    parser.add_argument(
        "--output",
        dest="output_dir",
        help="Directory to write chunk files into (defaults to SNAPSHOT_DIR)",
    )
    parser.add_argument("--chunk-size", dest="chunk_size", type=int, help="Businesses per chunk")
    return parser


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args()

    try:
        run_build_snapshot_job(
            source=args.source,
            output_dir=args.output_dir,
            input_path=args.input_path,
            chunk_size=args.chunk_size,
        )
    except (DirectoryError, OSError, ValueError) as exc:
        logger.error("Snapshot build failed: %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
