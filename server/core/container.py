"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.token_issuer import TokenIssuer
from services.user_auth import UserAuthService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Process-wide in-memory cache; the sweep is started in the app lifespan
    cache = providers.Singleton(
        CacheService.from_settings,
        settings=settings
    )

    token_issuer = providers.Singleton(
        TokenIssuer.from_settings,
        settings=settings
    )

    # Services
    user_auth_service = providers.Factory(
        UserAuthService,
        database=database,
        token_issuer=token_issuer,
        cache=cache,
        settings=settings
    )


# Global container instance
container = Container()
