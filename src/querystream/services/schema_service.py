"""
Schema Service for resolving schema context.

Coordinates the schema cache and the schema repository: a cached context is
returned as is; on a miss the target database is introspected and the
result cached.
"""

from ..domain.connections import ConnectionDescriptor
from ..domain.schema_context import SchemaContext
from ..infrastructure.cache.schema_cache import SchemaContextCache
from ..repositories.schema_repository import SchemaRepository
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id


logger = get_module_logger()


class SchemaService:
    """
    Service for schema-related business logic.

    Usage:
        schema_service = SchemaService(schema_repo, schema_cache)
        context = await schema_service.resolve(connection)
    """

    def __init__(self, schema_repository: SchemaRepository, cache: SchemaContextCache):
        """
        Initialize schema service.

        Args:
            schema_repository: SchemaRepository instance for introspection
            cache: Shared schema context cache
        """
        self.schema_repo = schema_repository
        self.cache = cache

    async def resolve(self, connection: ConnectionDescriptor) -> SchemaContext:
        """
        Get the schema context of a connection, introspecting on a miss.

        Raises:
            SchemaIntrospectionError: If introspection fails (nothing is cached)
        """
        cached = self.cache.get(connection.id)
        if cached is not None:
            return cached

        logger.info("Schema not cached, introspecting", connection_id=connection.id, trace_id=current_trace_id())
        context = await self.schema_repo.introspect(connection)
        self.cache.set(connection.id, context)
        return context
