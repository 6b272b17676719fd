"""Core data models shared by the storage, query and ingestion layers."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bizdir.core.exceptions import ValidationError


class BusinessStatus(str, enum.Enum):
    OPERATIONAL = "OPERATIONAL"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> "BusinessStatus":
        """Map stored or upstream status strings onto the closed enum."""
        if isinstance(value, BusinessStatus):
            return value
        if value is None or value == "":
            return cls.OPERATIONAL
        text = str(value).strip().upper()
        if text.startswith("CLOSED"):
            return cls.CLOSED
        try:
            return cls(text)
        except ValueError:
            return cls.UNKNOWN


class UpsertResult(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"invalid timestamp {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Photo:
    reference: str
    caption: str = ""
    cached_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"reference": self.reference, "caption": self.caption, "cachedUrl": self.cached_url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Photo":
        reference = data.get("reference")
        if not reference:
            raise ValidationError("photo reference is required")
        return cls(
            reference=str(reference),
            caption=str(data.get("caption") or ""),
            cached_url=data.get("cachedUrl") or None,
        )


@dataclass(slots=True)
class Business:
    """One directory entry in canonical form (no aliased field names)."""

    id: str
    name: str
    address: Optional[str] = None
    category: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    rating: float = 0.0
    review_count: int = 0
    coordinates: Optional[Tuple[float, float]] = None
    status: BusinessStatus = BusinessStatus.OPERATIONAL
    logo_url: Optional[str] = None
    logo_cached_url: Optional[str] = None
    photos: List[Photo] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.id or not str(self.id).strip():
            raise ValidationError("business id is required")
        if not self.name or not str(self.name).strip():
            raise ValidationError(f"business name is required (id={self.id})")
        self.id = str(self.id)
        try:
            self.rating = float(self.rating)
            self.review_count = int(self.review_count)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"rating and review count must be numeric (id={self.id})") from exc
        if not 0.0 <= self.rating <= 5.0:
            raise ValidationError(f"rating must be between 0 and 5, got {self.rating} (id={self.id})")
        if self.review_count < 0:
            raise ValidationError(f"review count must be >= 0, got {self.review_count} (id={self.id})")
        self.status = BusinessStatus.parse(self.status)

    @property
    def logo(self) -> Optional[str]:
        """The authoritative logo reference: the cached copy wins over the remote URL."""
        return self.logo_cached_url or self.logo_url

    @property
    def latitude(self) -> Optional[float]:
        return self.coordinates[0] if self.coordinates else None

    @property
    def longitude(self) -> Optional[float]:
        return self.coordinates[1] if self.coordinates else None

    def to_dict(self) -> Dict[str, Any]:
        coordinates = None
        if self.coordinates is not None:
            coordinates = {"latitude": self.coordinates[0], "longitude": self.coordinates[1]}
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "category": self.category,
            "phone": self.phone,
            "website": self.website,
            "email": self.email,
            "rating": self.rating,
            "reviewCount": self.review_count,
            "coordinates": coordinates,
            "status": self.status.value,
            "logoUrl": self.logo_url,
            "logoCachedUrl": self.logo_cached_url,
            "photos": [photo.to_dict() for photo in self.photos],
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Business":
        """Build a Business from its canonical JSON shape (see ``to_dict``)."""
        coordinates = None
        raw_coordinates = data.get("coordinates")
        if raw_coordinates:
            try:
                coordinates = (float(raw_coordinates["latitude"]), float(raw_coordinates["longitude"]))
            except (KeyError, TypeError, ValueError) as exc:
                raise ValidationError(f"invalid coordinates {raw_coordinates!r}") from exc
        return cls(
            id=data.get("id"),
            name=data.get("name"),
            address=data.get("address"),
            category=data.get("category"),
            phone=data.get("phone"),
            website=data.get("website"),
            email=data.get("email"),
            rating=data.get("rating", 0.0),
            review_count=data.get("reviewCount", 0),
            coordinates=coordinates,
            status=data.get("status"),
            logo_url=data.get("logoUrl"),
            logo_cached_url=data.get("logoCachedUrl"),
            photos=[Photo.from_dict(photo) for photo in data.get("photos") or []],
            created_at=parse_timestamp(data.get("createdAt")),
            updated_at=parse_timestamp(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class Stats:
    total_businesses: int = 0
    total_reviews: int = 0
    avg_rating: float = 0.0
    location_count: int = 0
    scam_reports: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalBusinesses": self.total_businesses,
            "totalReviews": self.total_reviews,
            "avgRating": self.avg_rating,
            "locations": self.location_count,
            "scamReports": self.scam_reports,
            "lastUpdated": format_timestamp(self.updated_at),
        }


@dataclass(frozen=True)
class ChunkInfo:
    chunk_number: int
    filename: str
    business_count: int
    first_business: str
    last_business: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunkNumber": self.chunk_number,
            "filename": self.filename,
            "businessCount": self.business_count,
            "firstBusiness": self.first_business,
            "lastBusiness": self.last_business,
        }


@dataclass(frozen=True)
class ChunkIndex:
    total_businesses: int
    businesses_per_chunk: int
    chunks: Tuple[ChunkInfo, ...] = ()

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalBusinesses": self.total_businesses,
            "totalChunks": self.total_chunks,
            "businessesPerChunk": self.businesses_per_chunk,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkIndex":
        chunks = tuple(
            ChunkInfo(
                chunk_number=int(entry["chunkNumber"]),
                filename=str(entry["filename"]),
                business_count=int(entry.get("businessCount", 0)),
                first_business=str(entry.get("firstBusiness", "")),
                last_business=str(entry.get("lastBusiness", "")),
            )
            for entry in data.get("chunks", [])
        )
        return cls(
            total_businesses=int(data.get("totalBusinesses", 0)),
            businesses_per_chunk=int(data.get("businessesPerChunk", 0)),
            chunks=chunks,
        )


PROGRESS_STATUSES = ("processing", "success", "failed", "completed")


@dataclass(frozen=True)
class ProgressState:
    """Snapshot of the ingestion batch currently tracked."""

    batch_number: int = 1
    total_businesses: int = 0
    current_business_index: int = 0
    current_business_name: str = ""
    status: str = "processing"
    logos_added: int = 0
    photos_added: int = 0
    errors: Tuple[str, ...] = ()
    current_step: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status not in PROGRESS_STATUSES:
            raise ValueError(f"unknown progress status {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchNumber": self.batch_number,
            "totalBusinesses": self.total_businesses,
            "currentBusinessIndex": self.current_business_index,
            "currentBusinessName": self.current_business_name,
            "status": self.status,
            "logosAdded": self.logos_added,
            "photosAdded": self.photos_added,
            "errors": list(self.errors),
            "currentStep": self.current_step,
        }
