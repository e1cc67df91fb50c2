# tests/conftest.py
import pytest
from httpx import AsyncClient, ASGITransport
from asgi_lifespan import LifespanManager

from laundryflow.core.policy import Role
from laundryflow.core.security import Actor, token_for
from laundryflow.main import app
from laundryflow.repos.inmemory import InMemoryRepo
from laundryflow.services.lifecycle import LifecycleService
from laundryflow.services.notifier import OutboxNotifier

PHOTO = "https://photos.example.com/handoff.jpg"

ADMIN = Actor(id="admin-1", role=Role.ADMIN)
OPS = Actor(id="ops-1", role=Role.OPERATION_MANAGER)
FACILITY = Actor(id="facility-1", role=Role.FACILITY_TEAM)
DRIVER = Actor(id="driver-1", role=Role.DRIVER)
OTHER_DRIVER = Actor(id="driver-2", role=Role.DRIVER)
CUSTOMER = Actor(id="customer-1", role=Role.CUSTOMER)

@pytest.fixture(scope="session")
def anyio_backend():
    # keep AnyIO on asyncio for the whole test session
    return "asyncio"

@pytest.fixture(scope="session")
async def test_client():
    # Start FastAPI lifespan once for the whole session
    async with LifespanManager(app):
        transport = ASGITransport(app=app, raise_app_exceptions=True)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

@pytest.fixture
def repo():
    return InMemoryRepo()

@pytest.fixture
def service(repo):
    return LifecycleService(repo, OutboxNotifier(repo))

def auth(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor.id, actor.role)}"}

def outbox_templates(repo: InMemoryRepo) -> list[str]:
    return [rec["body"]["template"] for rec in repo.outbox.values()]
