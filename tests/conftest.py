import sys
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from rewards_api.app import create_app
from rewards_api.core.settings import Settings
from rewards_api.observability.rewards import RewardsObservabilityStore
from rewards_api.services import build_container
from rewards_api.services.transport import InMemoryTransport
from rewards_api.store import InMemoryStore, paths


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@pytest.fixture
def config() -> Settings:
    return Settings(
        environment="development",
        store_backend="memory",
        ledger_max_attempts=50,
        broadcast_send_delay_seconds=0,
        broadcast_progress_batch_size=10,
        required_channels=["@rewards_channel"],
        admin_ids=["900"],
        logs_channel=None,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture
def observability() -> RewardsObservabilityStore:
    return RewardsObservabilityStore()


@pytest.fixture
def services(store, transport, config, observability):
    return build_container(store, transport, config, observability=observability)


@pytest.fixture
def make_user(store):
    async def _make_user(user_id: str, *, balance: int = 0, **fields: Any) -> dict[str, Any]:
        record = {
            "name": fields.pop("name", f"user-{user_id}"),
            "balance": balance,
            "total_earned": balance,
            "total_spent": 0,
            "total_referrals": 0,
            "referral_claimed": False,
            "banned": False,
            "blocked": False,
        }
        record.update(fields)
        await store.put(paths.user(user_id), record)
        return record

    return _make_user


@pytest_asyncio.fixture
async def app_with_services(services):
    app = create_app()
    app.state.services = services
    app.state.expiry_notifier = None
    app.state.transport_started = None

    try:
        yield app, services
    finally:
        await services.broadcasts.shutdown()
        app.dependency_overrides.clear()
