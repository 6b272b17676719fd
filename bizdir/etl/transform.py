"""Ingestion-boundary normalization of heterogeneous records into Business objects."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bizdir.core.exceptions import ValidationError
from bizdir.models import Business, BusinessStatus, Photo, parse_timestamp

logger = logging.getLogger(__name__)

_IGNORE_TYPES = {"point_of_interest", "establishment", "political", "premise"}

DEFAULT_NAME = "Unknown Business"
DEFAULT_CATEGORY = "Business Services"
DEFAULT_RATING = 4.0

# Canonical field -> accepted input names, checked in order.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "id": ("id", "place_id"),
    "name": ("name",),
    "address": ("address", "formatted_address"),
    "category": ("category", "type"),
    "phone": ("phone", "formatted_phone_number"),
    "website": ("website",),
    "email": ("email",),
    "rating": ("rating", "google_rating"),
    "review_count": ("reviewCount", "user_ratings_total", "review_count", "reviews_count"),
    "status": ("status", "business_status", "businessStatus"),
    "logo_url": ("logoUrl", "logo_url"),
    "logo_cached_url": ("logoCachedUrl", "logoS3Url", "logo_s3_url"),
    "created_at": ("createdAt", "created_at"),
    "updated_at": ("updatedAt", "updated_at"),
}


def _first(raw: Dict[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = raw.get(name)
        if value is not None and value != "":
            return value
    return None


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


def _safe_float(value: Any) -> Optional[float]:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


def _safe_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = "".join(ch for ch in value if ch.isdigit())
        if digits:
            return int(digits)
    return None


def extract_coordinates(raw: Dict[str, Any]) -> Optional[Tuple[float, float]]:
    """Find a (latitude, longitude) pair under any of the known shapes."""
    candidates = [
        (raw.get("latitude"), raw.get("longitude")),
        (raw.get("lat"), raw.get("lng")),
    ]
    for key in ("coordinates", "location"):
        nested = raw.get(key)
        if isinstance(nested, dict):
            candidates.append((nested.get("latitude", nested.get("lat")), nested.get("longitude", nested.get("lng"))))
    geometry = (raw.get("geometry") or {}).get("location")
    if isinstance(geometry, dict):
        candidates.append((geometry.get("lat"), geometry.get("lng")))

    for lat, lng in candidates:
        lat_val, lng_val = _safe_float(lat), _safe_float(lng)
        if lat_val is not None and lng_val is not None:
            return lat_val, lng_val
    return None


def extract_photos(raw_photos: Any) -> List[Photo]:
    photos: List[Photo] = []
    for item in raw_photos or []:
        if isinstance(item, str):
            if item.strip():
                photos.append(Photo(reference=item.strip()))
            continue
        if not isinstance(item, dict):
            continue
        reference = _strip_or_none(_first(item, ("reference", "url", "photo_reference")))
        if not reference:
            logger.debug("Skipping photo without reference: %s", item)
            continue
        photos.append(
            Photo(
                reference=reference,
                caption=str(item.get("caption") or ""),
                cached_url=_strip_or_none(_first(item, ("cachedUrl", "s3Url", "cached_url"))),
            )
        )
    return photos


def _extract_primary_type(types: Iterable[str]) -> Optional[str]:
    for type_name in types or []:
        if type_name not in _IGNORE_TYPES:
            return type_name
    return None


def normalize_record(raw: Dict[str, Any], *, require_name: bool = False) -> Business:
    """Map a raw record with any known alias names onto the canonical Business.

    Missing optional values get the directory defaults (rating 4.0, category
    "Business Services", ...). A record without an id is rejected; a record
    without a name is rejected only when ``require_name`` is set.
    """
    if not isinstance(raw, dict):
        raise ValidationError(f"business record must be an object, got {type(raw).__name__}")

    values = {field_name: _first(raw, names) for field_name, names in FIELD_ALIASES.items()}

    business_id = _strip_or_none(values["id"])
    if not business_id:
        raise ValidationError("business id is required")
    name = _strip_or_none(values["name"])
    if not name:
        if require_name:
            raise ValidationError(f"business name is required (id={business_id})")
        name = DEFAULT_NAME

    rating = _safe_float(values["rating"])
    if rating is None:
        rating = DEFAULT_RATING
    elif not 0.0 <= rating <= 5.0:
        logger.warning("Clamping out-of-range rating %s for %s", rating, business_id)
        rating = min(max(rating, 0.0), 5.0)

    review_count = _safe_int(values["review_count"]) or 0
    if review_count < 0:
        logger.warning("Clamping negative review count %s for %s", review_count, business_id)
        review_count = 0

    return Business(
        id=business_id,
        name=name,
        address=_strip_or_none(values["address"]) or "",
        category=_strip_or_none(values["category"]) or DEFAULT_CATEGORY,
        phone=_strip_or_none(values["phone"]),
        website=_strip_or_none(values["website"]),
        email=_strip_or_none(values["email"]),
        rating=rating,
        review_count=review_count,
        coordinates=extract_coordinates(raw),
        status=BusinessStatus.parse(values["status"]),
        logo_url=_strip_or_none(values["logo_url"]),
        logo_cached_url=_strip_or_none(values["logo_cached_url"]),
        photos=extract_photos(raw.get("photos")),
        created_at=parse_timestamp(values["created_at"]),
        updated_at=parse_timestamp(values["updated_at"]),
    )


def place_to_record(result: Dict[str, Any], category: Optional[str] = None) -> Business:
    """Convert a Places text search (or details) result into a Business.

    The ingestion category query is used as the directory category; the
    place's own primary type is the fallback.
    """
    record = dict(result)
    record["category"] = category or _extract_primary_type(result.get("types", []))
    record.pop("type", None)
    return normalize_record(record, require_name=True)
