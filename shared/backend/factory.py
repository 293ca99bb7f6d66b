"""
Backend Service Factory
=======================

Builds BackendService bundles for the configured provider and keeps the
process-wide default instance plus any named instances.

Providers:
- local: in-memory (optionally JSON-persisted) tables, database auth
- postgresql: PostgreSQL tables, database auth
- aurora-serverless: PostgreSQL tables, Cognito auth, S3, Lambda
- aws: database and auth through the Mind Measure API, S3, Lambda

Usage:
    from shared.backend import BackendServiceFactory, get_database

    BackendServiceFactory.initialize()
    rows = (await get_database().select("profiles")).data

Version: 0.1.0
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, SecretStr

from shared.backend.base import (
    AuthService,
    BackendService,
    DatabaseService,
    FunctionService,
    RealtimeService,
    StorageService,
)
from shared.backend.errors import BackendConfigurationError
from shared.config import BackendProvider, settings
from shared.logging import get_logger


logger = get_logger(__name__)


SQL_PROVIDERS = (BackendProvider.POSTGRESQL, BackendProvider.AURORA_SERVERLESS)


class BackendServiceConfig(BaseModel):
    """Everything needed to build one BackendService."""

    provider: BackendProvider = BackendProvider.LOCAL

    # SQL providers
    host: str | None = None
    port: int = 5432
    database: str | None = None
    username: str | None = None
    password: SecretStr | None = None
    ssl: bool = False

    # local provider
    local_data_dir: Path | None = None
    auto_confirm_signups: bool = False

    # AWS
    region: str = "eu-west-2"
    access_key_id: str | None = None
    secret_access_key: SecretStr | None = None
    cognito_client_id: str | None = None
    cognito_user_pool_id: str | None = None
    s3_region: str | None = None
    lambda_prefix: str = ""

    # aws provider
    api_base_url: str | None = None
    api_token: SecretStr | None = None
    api_timeout_seconds: float = 15.0

    @staticmethod
    def secret_value(value: SecretStr | None) -> str | None:
        return value.get_secret_value() if value is not None else None

    def missing_fields(self) -> list[str]:
        """Required settings that are empty for this provider."""
        required: list[str] = []
        if self.provider in SQL_PROVIDERS:
            required += ["host", "database", "username", "password"]
        if self.provider == BackendProvider.AURORA_SERVERLESS:
            required.append("cognito_client_id")
        if self.provider == BackendProvider.AWS:
            required.append("api_base_url")

        missing = []
        for name in required:
            value = getattr(self, name)
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if not value:
                missing.append(name)
        return missing


class BackendServiceFactory:
    """
    Creates and tracks BackendService instances.

    State is class-level: one default instance plus a registry of named
    instances (e.g. a second provider used during a migration).
    """

    _instance: BackendService | None = None
    _config: BackendServiceConfig | None = None
    _named: dict[str, BackendService] = {}

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @staticmethod
    def environment_config() -> BackendServiceConfig:
        """Build a config from the application settings."""
        pg = settings.postgres
        aws = settings.aws
        backend = settings.backend

        return BackendServiceConfig(
            provider=backend.provider,
            host=pg.host,
            port=pg.port,
            database=pg.db,
            username=pg.user,
            password=pg.password,
            ssl=pg.ssl,
            local_data_dir=backend.local_data_dir,
            region=aws.region,
            access_key_id=aws.access_key_id or None,
            secret_access_key=aws.secret_access_key,
            cognito_client_id=aws.cognito_client_id or None,
            cognito_user_pool_id=aws.cognito_user_pool_id or None,
            s3_region=aws.s3_region,
            lambda_prefix=aws.lambda_prefix,
            api_base_url=backend.api_base_url,
            api_token=backend.api_token,
            api_timeout_seconds=backend.api_timeout_seconds,
        )

    @staticmethod
    def validate_config(config: BackendServiceConfig) -> None:
        """
        Check required settings for the provider.

        Raises:
            BackendConfigurationError: If anything required is missing
        """
        missing = config.missing_fields()
        if missing:
            raise BackendConfigurationError(
                f"Missing configuration for {config.provider.value} provider: {', '.join(missing)}"
            )

    @classmethod
    def create_service(cls, config: BackendServiceConfig) -> BackendService:
        """
        Build a BackendService without registering it.

        Args:
            config: Provider configuration

        Returns:
            A new BackendService
        """
        cls.validate_config(config)
        realtime = RealtimeService()
        provider = config.provider

        database: DatabaseService
        auth: AuthService
        storage: StorageService
        functions: FunctionService

        if provider == BackendProvider.LOCAL:
            from shared.backend.database_auth import DatabaseAuthService
            from shared.backend.local import LocalDatabaseService, LocalFunctionService, LocalStorageService

            database = LocalDatabaseService(config.local_data_dir, realtime=realtime)
            auth = DatabaseAuthService(database, auto_confirm=config.auto_confirm_signups)
            storage = LocalStorageService()
            functions = LocalFunctionService()

        elif provider in SQL_PROVIDERS:
            from shared.backend.postgres import PostgresDatabaseService, build_url

            url = build_url(
                host=config.host or "",
                port=config.port,
                database=config.database or "",
                username=config.username or "",
                password=config.secret_value(config.password) or "",
            )
            database = PostgresDatabaseService(
                url,
                realtime=realtime,
                ssl=config.ssl,
                echo=settings.debug and not settings.is_production,
            )

            if provider == BackendProvider.POSTGRESQL:
                from shared.backend.database_auth import DatabaseAuthService
                from shared.backend.local import LocalFunctionService, LocalStorageService

                auth = DatabaseAuthService(database, auto_confirm=config.auto_confirm_signups)
                storage = LocalStorageService()
                functions = LocalFunctionService()
            else:
                from shared.backend.cognito import CognitoAuthService

                auth = CognitoAuthService(
                    client_id=config.cognito_client_id or "",
                    user_pool_id=config.cognito_user_pool_id,
                    region=config.region,
                    access_key_id=config.access_key_id,
                    secret_access_key=config.secret_value(config.secret_access_key),
                )
                storage, functions = cls._aws_storage_and_functions(config)

        elif provider == BackendProvider.AWS:
            from shared.backend.remote import ApiAuthService, ApiClient, ApiDatabaseService

            client = ApiClient(
                base_url=config.api_base_url or "",
                token=config.secret_value(config.api_token),
                timeout=config.api_timeout_seconds,
            )
            database = ApiDatabaseService(client, realtime=realtime)
            auth = ApiAuthService(client)
            storage, functions = cls._aws_storage_and_functions(config)

        else:
            raise BackendConfigurationError(f"Unknown backend provider: {provider}")

        logger.info("backend_service_created", provider=provider.value)
        return BackendService(
            provider=provider,
            database=database,
            auth=auth,
            storage=storage,
            realtime=realtime,
            functions=functions,
        )

    @staticmethod
    def _aws_storage_and_functions(config: BackendServiceConfig) -> tuple[StorageService, FunctionService]:
        from shared.backend.aws import LambdaFunctionService, S3StorageService

        secret = config.secret_value(config.secret_access_key)
        storage = S3StorageService(
            region=config.s3_region or config.region,
            access_key_id=config.access_key_id,
            secret_access_key=secret,
        )
        functions = LambdaFunctionService(
            prefix=config.lambda_prefix,
            region=config.region,
            access_key_id=config.access_key_id,
            secret_access_key=secret,
        )
        return storage, functions

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    @classmethod
    def initialize(cls, config: BackendServiceConfig | None = None) -> BackendService:
        """
        Create the default instance.

        Args:
            config: Provider configuration (defaults to environment_config())

        Returns:
            The default BackendService
        """
        config = config or cls.environment_config()
        cls._instance = cls.create_service(config)
        cls._config = config
        logger.info("backend_service_initialized", provider=config.provider.value)
        return cls._instance

    @classmethod
    def set_instance(cls, service: BackendService, config: BackendServiceConfig | None = None) -> None:
        """Install a prebuilt default instance (tests, custom wiring)."""
        cls._instance = service
        cls._config = config or BackendServiceConfig(provider=service.provider)

    @classmethod
    def get_instance(cls) -> BackendService:
        """
        Get the default instance.

        Raises:
            BackendConfigurationError: If initialize() has not been called
        """
        if cls._instance is None:
            raise BackendConfigurationError(
                "Backend service not initialized. Call BackendServiceFactory.initialize() first."
            )
        return cls._instance

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def get_named_instance(
        cls,
        name: str,
        config: BackendServiceConfig | None = None,
    ) -> BackendService:
        """Get or create a named instance."""
        if name not in cls._named:
            cls._named[name] = cls.create_service(config or cls.environment_config())
            logger.info("named_backend_service_created", name=name)
        return cls._named[name]

    @classmethod
    def instance_count(cls) -> int:
        """Default instance (if any) plus named instances."""
        return len(cls._named) + (1 if cls._instance is not None else 0)

    @classmethod
    async def clear_instances(cls) -> None:
        """Close and forget every instance."""
        services = list(cls._named.values())
        if cls._instance is not None:
            services.append(cls._instance)

        for service in services:
            await service.close()

        cls._named = {}
        cls._instance = None
        cls._config = None
        logger.info("backend_instances_cleared", closed=len(services))

    @classmethod
    async def switch_provider(cls, provider: BackendProvider | str, **overrides: Any) -> BackendService:
        """
        Replace the default instance with one for another provider.

        Raises:
            BackendConfigurationError: In production, or if the new config is invalid
        """
        if settings.is_production:
            raise BackendConfigurationError("Switching backend provider is not allowed in production")

        base = cls._config or cls.environment_config()
        config = base.model_copy(update={"provider": BackendProvider(provider), **overrides})
        service = cls.create_service(config)

        previous = cls._instance
        cls._instance = service
        cls._config = config
        if previous is not None:
            await previous.close()

        logger.warning(
            "backend_provider_switched",
            from_provider=previous.provider.value if previous else None,
            to_provider=config.provider.value,
        )
        return service

    @classmethod
    async def perform_health_check(cls) -> dict[str, Any]:
        """Health of the default instance, or an unhealthy report if none."""
        if cls._instance is None:
            return {"status": "unhealthy", "error": "Backend service not initialized"}
        return await cls._instance.health_check()


# =============================================================================
# Module helpers
# =============================================================================


def initialize_backend_service(config: BackendServiceConfig | None = None) -> BackendService:
    """Initialize the default backend from settings and log deployment warnings."""
    if settings.is_production and settings.privacy.uses_default_pepper:
        logger.warning("default_privacy_pepper_in_production")
    if settings.is_production and settings.backend.provider == BackendProvider.LOCAL:
        logger.warning("local_backend_in_production")
    return BackendServiceFactory.initialize(config)


def get_backend() -> BackendService:
    return BackendServiceFactory.get_instance()


def get_database() -> DatabaseService:
    return BackendServiceFactory.get_instance().database


def get_auth() -> AuthService:
    return BackendServiceFactory.get_instance().auth


def get_storage() -> StorageService:
    return BackendServiceFactory.get_instance().storage


def get_realtime() -> RealtimeService:
    return BackendServiceFactory.get_instance().realtime


def get_functions() -> FunctionService:
    return BackendServiceFactory.get_instance().functions
