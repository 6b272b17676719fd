"""Partition a full business list into fixed-size ordered chunk files."""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple, TypeVar, Union

from bizdir.etl.transform import normalize_record
from bizdir.models import Business, ChunkIndex, ChunkInfo

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50
INDEX_FILENAME = "business-chunks-index.json"
DEFAULT_PAGE_FILENAME = "businesses.json"
_CHUNK_TEMPLATE = "business-chunk-{number}.json"
_CHUNK_PATTERN = re.compile(r"^business-chunk-(\d+)\.json$")

T = TypeVar("T")


def chunk_filename(number: int) -> str:
    return _CHUNK_TEMPLATE.format(number=number)


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive groups of ``size``; the last may be shorter."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


@dataclass(frozen=True)
class Snapshot:
    chunks: Tuple[Tuple[Dict[str, Any], ...], ...]
    index: ChunkIndex

    @property
    def first_page(self) -> List[Dict[str, Any]]:
        return list(self.chunks[0]) if self.chunks else []


def build_snapshot(records: Iterable[Union[Business, Dict[str, Any]]], chunk_size: int = DEFAULT_CHUNK_SIZE) -> Snapshot:
    """Normalize ``records`` in their given order and partition them.

    Raw dicts go through the alias-aware normalizer, so the documented
    defaults apply whichever upstream field name supplied a value.
    """
    normalized = [
        (record if isinstance(record, Business) else normalize_record(record)).to_dict() for record in records
    ]
    groups = partition(normalized, chunk_size)
    chunks = tuple(tuple(group) for group in groups)
    index = ChunkIndex(
        total_businesses=len(normalized),
        businesses_per_chunk=chunk_size,
        chunks=tuple(
            ChunkInfo(
                chunk_number=number,
                filename=chunk_filename(number),
                business_count=len(group),
                first_business=group[0]["name"],
                last_business=group[-1]["name"],
            )
            for number, group in enumerate(groups, start=1)
        ),
    )
    return Snapshot(chunks=chunks, index=index)


def render_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False) + "\n"


def _write(path: str, payload: Any) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as fh:
        fh.write(render_json(payload))
    os.replace(tmp_path, path)


def write_snapshot(snapshot: Snapshot, directory: str) -> List[str]:
    """Write chunk files, the index and the default first-page file.

    Chunk files left over from an earlier, larger build are removed so the
    directory always matches the index.
    """
    os.makedirs(directory, exist_ok=True)
    written: List[str] = []
    for info, chunk in zip(snapshot.index.chunks, snapshot.chunks):
        path = os.path.join(directory, info.filename)
        _write(path, list(chunk))
        written.append(path)
        logger.info("Wrote %s (%d businesses)", info.filename, info.business_count)

    for filename in os.listdir(directory):
        match = _CHUNK_PATTERN.match(filename)
        if match and int(match.group(1)) > snapshot.index.total_chunks:
            os.remove(os.path.join(directory, filename))
            logger.info("Removed stale chunk file %s", filename)

    index_path = os.path.join(directory, INDEX_FILENAME)
    _write(index_path, snapshot.index.to_dict())
    written.append(index_path)

    page_path = os.path.join(directory, DEFAULT_PAGE_FILENAME)
    _write(page_path, snapshot.first_page)
    written.append(page_path)

    logger.info(
        "Snapshot complete: %d businesses across %d chunks in %s",
        snapshot.index.total_businesses,
        snapshot.index.total_chunks,
        directory,
    )
    return written
