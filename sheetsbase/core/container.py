"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from sheetsbase.core.config import Settings
from sheetsbase.core.cache import CacheLayer
from sheetsbase.services.id_allocator import IdAllocator
from sheetsbase.services.query_engine import QueryEngine
from sheetsbase.services.sheets import SheetsTransport
from sheetsbase.services.table_service import TableService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    settings = providers.Singleton(
        Settings,
    )

    # Shared by every request; one instance per process
    cache = providers.Singleton(
        CacheLayer,
        settings=settings,
    )

    transport = providers.Singleton(
        SheetsTransport,
        settings=settings,
    )

    query_engine = providers.Singleton(
        QueryEngine,
    )

    id_allocator = providers.Singleton(
        IdAllocator,
    )

    table_service = providers.Singleton(
        TableService,
        settings=settings,
        transport=transport,
        cache=cache,
        engine=query_engine,
        id_allocator=id_allocator,
    )


# Global container instance
container = Container()
