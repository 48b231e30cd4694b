"""
Account Repositories.

Users (with their plan tier) and target database connections are owned by
external systems. These interfaces are what the pipeline reads; the
in-memory implementations can be seeded from a JSON file at startup:

    {
        "users": [{"id": "u1", "plan": "growth"}],
        "connections": [
            {"id": "c1", "user_id": "u1", "dialect": "sqlite", "database": "/data/shop.db"}
        ]
    }
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from querystream.domain.connections import ConnectionDescriptor, UserAccount
from querystream.domain.errors import ConfigurationError
from querystream.utils.logging import get_module_logger

logger = get_module_logger()


class UserDirectory(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserAccount]:
        ...


class ConnectionRepository(ABC):
    @abstractmethod
    async def get(self, connection_id: str) -> Optional[ConnectionDescriptor]:
        ...

    @abstractmethod
    async def upsert(self, connection: ConnectionDescriptor) -> None:
        ...

    @abstractmethod
    async def delete(self, connection_id: str) -> bool:
        ...


class InMemoryUserDirectory(UserDirectory):
    def __init__(self, users: Optional[List[UserAccount]] = None):
        self._users: Dict[str, UserAccount] = {user.id: user for user in users or []}

    async def get(self, user_id: str) -> Optional[UserAccount]:
        return self._users.get(user_id)

    async def upsert(self, user: UserAccount) -> None:
        self._users[user.id] = user


class InMemoryConnectionRepository(ConnectionRepository):
    def __init__(self, connections: Optional[List[ConnectionDescriptor]] = None):
        self._connections: Dict[str, ConnectionDescriptor] = {c.id: c for c in connections or []}

    async def get(self, connection_id: str) -> Optional[ConnectionDescriptor]:
        return self._connections.get(connection_id)

    async def upsert(self, connection: ConnectionDescriptor) -> None:
        self._connections[connection.id] = connection

    async def delete(self, connection_id: str) -> bool:
        return self._connections.pop(connection_id, None) is not None


class AccountSeed(BaseModel):
    """Contents of an account seed file."""

    users: List[UserAccount] = Field(default_factory=list)
    connections: List[ConnectionDescriptor] = Field(default_factory=list)


def load_account_seed(path: Optional[str]) -> AccountSeed:
    """
    Read users and connections from a JSON seed file.

    Returns an empty seed when `path` is None.

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    if not path:
        return AccountSeed()

    seed_path = Path(path)
    try:
        seed = AccountSeed.model_validate(json.loads(seed_path.read_text(encoding="utf-8")))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load account seed file '{path}': {e}") from e

    logger.info("Account seed loaded", path=str(seed_path), users=len(seed.users), connections=len(seed.connections))
    return seed
