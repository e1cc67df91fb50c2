from functools import lru_cache

from laundryflow.core.config import settings
from laundryflow.services.lifecycle import LifecycleService
from laundryflow.services.notifier import OutboxNotifier

@lru_cache(maxsize=1)
def get_repo():
    if settings.use_mongo:
        from motor.motor_asyncio import AsyncIOMotorClient
        from laundryflow.repos.mongo import MongoRepo
        client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True, uuidRepresentation="standard")
        return MongoRepo(client[settings.mongo_db])
    from laundryflow.repos.inmemory import InMemoryRepo
    return InMemoryRepo()

def get_service() -> LifecycleService:
    repo = get_repo()
    return LifecycleService(repo, OutboxNotifier(repo))
