import sys
from pathlib import Path

import pytest

# Ensure the `bizdir` package is importable when running pytest from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bizdir.core import config  # noqa: E402
from bizdir.models import Business, BusinessStatus, Photo  # noqa: E402


@pytest.fixture(autouse=True)
def clear_settings_cache():
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


def make_business(business_id="b1", **overrides):
    values = dict(
        id=business_id,
        name=f"Company {business_id}",
        address="Sheikh Zayed Road, Dubai",
        category="visa services in dubai",
        rating=4.5,
        review_count=10,
        coordinates=(25.2, 55.27),
        status=BusinessStatus.OPERATIONAL,
    )
    values.update(overrides)
    return Business(**values)


@pytest.fixture
def business_factory():
    return make_business


@pytest.fixture
def sample_businesses():
    """Mixed set covering ties, categories, statuses and missing coordinates."""
    return [
        make_business("a", name="Alpha Visa", rating=4.8, review_count=120),
        make_business("b", name="Beta Immigration", rating=4.8, review_count=120, category="immigration consultants dubai"),
        make_business("c", name="Gamma Travel", rating=4.8, review_count=300, address="Deira, Dubai"),
        make_business("d", name="Delta 100% Docs", rating=3.9, review_count=5, coordinates=None),
        make_business("e", name="Epsilon Consultants", rating=5.0, review_count=0, category="Business Consultants Dubai"),
        make_business("f", name="Closed Corner", rating=4.9, review_count=50, status=BusinessStatus.CLOSED),
        make_business("g", name="Zeta Overseas", rating=4.1, review_count=77, coordinates=(25.2, 55.27)),
        make_business(
            "h",
            name="Eta Education",
            rating=4.1,
            review_count=77,
            category="overseas education dubai",
            logo_url="https://example.com/logo.png",
            photos=[Photo(reference="ref-1", caption="Front")],
        ),
    ]
