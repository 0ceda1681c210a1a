"""Pytest fixtures shared by the unit and integration tests.

Integration tests run the voting service and the FastAPI app against the
in-memory repository, with recording doubles standing in for the
notification outbox and the token store.
"""

from typing import AsyncGenerator, Dict

import httpx
import pytest

from versus.shared.models import LocalizedText, SiteSettings, Test, new_test
from versus.voting_api.database import InMemoryTestRepository
from versus.voting_api.orchestrator import VotingService

from tests.doubles import ADMIN, TOKENS, RecordingPublisher, StaticIdentityResolver


@pytest.fixture
def site() -> SiteSettings:
    return SiteSettings()


@pytest.fixture
def test_data() -> Dict:
    """Creation payload for a three-option test."""
    return {
        "title": {"tr": "En İyi Kahve", "en": "Best coffee"},
        "category": "food",
        "description": {"tr": "Favori kahveni seç"},
        "options": [
            {
                "title": {"tr": "Espresso", "en": "Espresso"},
                "image": "https://cdn.example.com/espresso.jpg",
                "custom_fields": [
                    {"name": {"tr": "Köken"}, "value": {"tr": "İtalya"}},
                    {"name": {"tr": "Eksik"}, "value": {"en": "only english"}},
                ],
            },
            {"title": {"tr": "Latte"}, "image": "https://cdn.example.com/latte.jpg"},
            {"title": {"tr": "Filtre"}, "image": "https://cdn.example.com/filter.jpg"},
        ],
    }


@pytest.fixture
def make_test(site: SiteSettings, test_data: Dict):
    """Factory building an unsaved test with ``option_count`` options."""

    def _make(option_count: int = 3, **overrides) -> Test:
        data = dict(test_data)
        data["options"] = [
            {"title": {"tr": f"Seçenek {i}"}, "image": f"https://cdn.example.com/{i}.jpg"}
            for i in range(option_count)
        ]
        data.update(overrides)
        return new_test(data, site)

    return _make


@pytest.fixture
def repository() -> InMemoryTestRepository:
    repo = InMemoryTestRepository()
    repo.add_category("food", LocalizedText(tr="Yemek", en="Food"))
    return repo


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def service(repository, publisher, site) -> VotingService:
    return VotingService(repository, publisher, site=site, max_retries=5, retry_delay=0)


@pytest.fixture
async def stored_test(service: VotingService, test_data: Dict) -> Test:
    """A three-option test saved through the service."""
    return await service.create_test(test_data, ADMIN)


@pytest.fixture
async def api_client(
    repository, publisher, service
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client talking to the FastAPI app in-process.

    ASGITransport does not run the lifespan, so the app's collaborators
    are installed on ``app.state`` directly.
    """
    from versus.voting_api.main import app

    app.state.repository = repository
    app.state.publisher = publisher
    app.state.identity = StaticIdentityResolver(TOKENS)
    app.state.voting = service
    app.state.limiter.reset()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    app.state.voting = None


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring a live PostgreSQL instance"
    )
