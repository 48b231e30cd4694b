"""
Account Service.

Resolves the caller and their connections, and keeps both caches in step
with connection changes: editing or deleting a connection drops its
schema context and every cached answer for it.
"""

from typing import Optional, Tuple

from querystream.domain.connections import ConnectionDescriptor, UserAccount
from querystream.domain.errors import CacheError, ConnectionNotFoundError, UnauthorizedError
from querystream.infrastructure.cache.query_cache import QueryResultCache
from querystream.infrastructure.cache.schema_cache import SchemaContextCache
from querystream.repositories.account_repository import ConnectionRepository, UserDirectory
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()


class AccountService:
    def __init__(
        self,
        users: UserDirectory,
        connections: ConnectionRepository,
        schema_cache: SchemaContextCache,
        query_cache: QueryResultCache,
    ):
        self.users = users
        self.connections = connections
        self.schema_cache = schema_cache
        self.query_cache = query_cache

    async def resolve_user(self, user_id: Optional[str]) -> UserAccount:
        """
        Raises:
            UnauthorizedError: If no identity was given or it is unknown
        """
        if not user_id:
            raise UnauthorizedError()
        user = await self.users.get(user_id)
        if user is None:
            logger.info("Unknown user", user_id=user_id, trace_id=current_trace_id())
            raise UnauthorizedError()
        return user

    async def resolve_connection(self, user: UserAccount, connection_id: str) -> ConnectionDescriptor:
        """
        Raises:
            ConnectionNotFoundError: If the connection is unknown or not the user's
        """
        connection = await self.connections.get(connection_id)
        if connection is None or connection.user_id != user.id:
            raise ConnectionNotFoundError(connection_id)
        return connection

    async def invalidate_connection(self, connection_id: str) -> Tuple[int, int]:
        """
        Drop cached schema and answers for one connection.

        Returns:
            (schema entries removed, query entries removed)

        Raises:
            CacheError: If the shared query cache cannot be reached
        """
        schema_removed = 1 if self.schema_cache.invalidate(connection_id) else 0
        query_removed = await self.query_cache.clear_for_connection(connection_id)
        return schema_removed, query_removed

    async def save_connection(self, connection: ConnectionDescriptor) -> None:
        await self.connections.upsert(connection)
        await self._invalidate_quietly(connection.id)

    async def delete_connection(self, connection_id: str) -> bool:
        removed = await self.connections.delete(connection_id)
        await self._invalidate_quietly(connection_id)
        return removed

    async def _invalidate_quietly(self, connection_id: str) -> None:
        try:
            await self.invalidate_connection(connection_id)
        except CacheError as e:
            # Entries expire on their own within the query TTL
            logger.warning("Query cache invalidation failed", connection_id=connection_id, error=e.message)
