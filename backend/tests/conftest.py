"""Pytest configuration and fixtures."""

import os
import secrets
import sys
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"
_TEST_CRON_KEY = f"cron-{secrets.token_urlsafe(16)}"

# For unit tests, set mock values ONLY if not running integration tests
if not os.environ.get("RUN_INTEGRATION"):
    os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
    os.environ.setdefault("CRON_API_KEY", _TEST_CRON_KEY)
    os.environ.setdefault("ADMIN_USER_IDS", '["admin-1"]')
    os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
    os.environ.setdefault(
        "DATABASE_PATH", str(Path(tempfile.mkdtemp(prefix="gigsettle-")) / "import.db")
    )
else:
    # For integration tests, load from .env
    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / ".env"
    print("\n⚠️  Running integration tests with settings from .env\n", file=sys.stderr)
    load_dotenv(env_path, override=True)

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import get_engine, reset_engines  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_database(tmp_path, monkeypatch):
    """Give every test its own settlement database."""
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "api.db"))
    get_settings.cache_clear()
    reset_engines()
    limiter.enabled = False
    yield
    reset_engines()
    get_settings.cache_clear()


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.fixture
def engine():
    """The engine the routes are using for this test."""
    return get_engine()


@pytest.fixture
def headers_for():
    """Factory: auth headers with a test token for ``user_id``."""

    def _headers(user_id: str) -> dict:
        token = create_access_token(user_id, get_settings())
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def cron_headers():
    return {"x-api-key": get_settings().cron_api_key}


@pytest.fixture
def assigned_job(client, headers_for):
    """Factory: a job with milestones, an accepted bid and a funded trade, via the API."""

    def _make(amounts=("100",), client_id="client-1", freelancer_id="freelancer-1"):
        client_h = headers_for(client_id)
        job = client.post("/jobs", json={"title": "Landing page"}, headers=client_h).json()
        milestone_ids = []
        for i, amount in enumerate(amounts):
            response = client.post(
                f"/jobs/{job['id']}/milestones",
                json={"title": f"Part {i + 1}", "amount": amount, "due_date": "2099-01-01T00:00:00Z"},
                headers=client_h,
            )
            milestone_ids.append(response.json()["id"])
        total = str(sum((Decimal(a) for a in amounts), Decimal("0")))
        bid = client.post(
            f"/jobs/{job['id']}/bids",
            json={"amount": total, "delivery_days": 14, "proposal": "Happy to help"},
            headers=headers_for(freelancer_id),
        ).json()["bid"]
        client.post(f"/jobs/{job['id']}/bids/{bid['id']}/accept", headers=client_h)
        client.post(f"/jobs/{job['id']}/trade/deposit", json={"escrow_id": 7}, headers=client_h)
        return job["id"], milestone_ids

    return _make


@pytest.fixture
def submitted_milestone(client, headers_for, assigned_job):
    """Factory: the first milestone of a fresh job, started and submitted via the API."""

    def _make(**kwargs):
        job_id, milestone_ids = assigned_job(**kwargs)
        freelancer_h = headers_for(kwargs.get("freelancer_id", "freelancer-1"))
        base = f"/jobs/{job_id}/milestones/{milestone_ids[0]}"
        client.post(f"{base}/start", headers=freelancer_h)
        client.post(
            f"{base}/submit",
            json={"submission_url": "https://example.com/site"},
            headers=freelancer_h,
        )
        return job_id, milestone_ids[0]

    return _make
