"""Client utilities for the Google Places API."""

import logging
from typing import Any, Dict, Optional

import requests

from bizdir.core.exceptions import NetworkError, NetworkErrorKind

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
_BASE_URL = "https://maps.googleapis.com/maps/api/place"
DEFAULT_TIMEOUT = 10

DETAIL_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,geometry,website,"
    "rating,user_ratings_total,types,business_status,photos"
)


class GooglePlacesError(NetworkError):
    """Raised when the Places API returns a non-successful status."""

    def __init__(self, status: str, message: Optional[str] = None) -> None:
        self.status = status
        super().__init__(NetworkErrorKind.INVALID_RESPONSE, message or status)


def _get(endpoint: str, params: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    try:
        response = _SESSION.get(f"{_BASE_URL}/{endpoint}/json", params=params, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise NetworkError.from_exception(exc) from exc

    status = payload.get("status")
    if status not in {"OK", "ZERO_RESULTS"}:
        logger.error("%s failed: status=%s, error_message=%s", endpoint, status, payload.get("error_message"))
        raise GooglePlacesError(str(status), payload.get("error_message"))
    return payload


def text_search(
    query: str,
    api_key: str,
    pagetoken: Optional[str] = None,
    location: Optional[str] = None,
    radius: Optional[int] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {"query": query, "key": api_key}
    if pagetoken:
        params["pagetoken"] = pagetoken
    if location:
        params["location"] = location
        if radius:
            params["radius"] = radius
    return _get("textsearch", params, timeout)


def place_details(place_id: str, api_key: str, timeout: float = DEFAULT_TIMEOUT) -> Dict[str, Any]:
    params = {"place_id": place_id, "key": api_key, "fields": DETAIL_FIELDS}
    payload = _get("details", params, timeout)
    return payload.get("result", {})
