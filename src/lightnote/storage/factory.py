"""Provider factory: validates configuration, creates and switches providers.

The factory is a plain object constructed by the application's composition
root (see ``lightnote.main.build_factory``) with an explicit registry of
provider classes; there is no module-level instance.
"""
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Type, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from lightnote.config import (LATEST_SCHEMA_VERSION, PROVIDER_ALIASES,
                              DatabaseConfig, ProviderKind,
                              default_database_config)
from lightnote.exceptions import (ConfigurationError, DatabaseError,
                                  ErrorCategory, ErrorCode,
                                  ProviderConnectionError, SyncError)
from lightnote.storage.base import (DatabaseProvider, ProviderCapabilities,
                                    ProviderInfo)

logger = logging.getLogger(__name__)

# Capabilities of kinds the factory knows about but may not have registered
NETWORKED_CAPABILITIES = ProviderCapabilities(
    supports_realtime=True,
    supports_bulk_operations=True,
    supports_transactions=True,
    supports_full_text_search=True,
    supports_relations=True,
    supports_indexes=True,
    supports_backup=True,
    supports_encryption=True,
    max_concurrent_connections=100,
    max_record_size=50 * 1024 * 1024,
)

SWITCH_RETRY_AFTER_MS = 1000

ProviderRegistry = Mapping[str, Type[DatabaseProvider]]
ConfigInput = Union[DatabaseConfig, Dict[str, Any]]


class ConfigValidation(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


class ProviderFactory:
    """Owns the single active provider and switches between providers.

    Args:
        registry: Provider kind -> provider class. Each class is constructed
            with the config's ``ProviderOptions`` and must be initialised
            before use.
        environ: Environment mapping used for networked-provider defaults;
            ``os.environ`` when omitted.
        aliases: Legacy provider name -> registered kind. Configs naming an
            alias are rewritten to the kind before validation.
    """

    def __init__(self, registry: ProviderRegistry,
                 environ: Optional[Mapping[str, str]] = None,
                 aliases: Optional[Mapping[str, str]] = None):
        self._registry: Dict[str, Type[DatabaseProvider]] = dict(registry)
        self._aliases: Dict[str, str] = dict(PROVIDER_ALIASES if aliases is None else aliases)
        self._environ = environ
        self._current_provider: Optional[DatabaseProvider] = None
        self._current_config: Optional[DatabaseConfig] = None
        self._switch_in_progress = False

    @property
    def environ(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    # Introspection

    def resolve_provider_name(self, provider: str) -> str:
        return self._aliases.get(provider, provider)

    def is_provider_supported(self, provider: str) -> bool:
        return self.resolve_provider_name(provider) in self._registry

    def get_supported_providers(self) -> List[str]:
        return list(self._registry)

    def get_provider_capabilities(self, provider: str) -> Optional[ProviderCapabilities]:
        """Capabilities of a provider kind, or None for unknown kinds."""
        provider = self.resolve_provider_name(provider)
        provider_cls = self._registry.get(provider)
        capabilities = getattr(provider_cls, "CAPABILITIES", None)
        if capabilities is not None:
            return capabilities.model_copy()
        if provider == ProviderKind.SUPABASE.value:
            return NETWORKED_CAPABILITIES.model_copy()
        return None

    def get_default_config(self, environ: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
        """Default configuration derived only from the environment mapping."""
        return default_database_config(self.environ if environ is None else environ)

    def validate_config(self, config: Any) -> ConfigValidation:
        """Check ``config`` without touching any storage.

        Returns:
            ConfigValidation listing every problem found.
        """
        if config is None:
            return ConfigValidation(is_valid=False, errors=["Configuration is required"])
        if isinstance(config, dict):
            try:
                config = DatabaseConfig.model_validate(config)
            except PydanticValidationError as e:
                errors = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
                return ConfigValidation(is_valid=False, errors=errors)
        config = self._resolved(config)

        errors: List[str] = []
        options = config.options

        if not config.provider:
            errors.append("Provider is required")
        elif not self.is_provider_supported(config.provider):
            errors.append(f"Provider '{config.provider}' is not supported")

        if config.provider == ProviderKind.SQLITE.value:
            if options.version is not None and options.version < 1:
                errors.append("Database version must be >= 1")
            if options.version is not None and options.version > LATEST_SCHEMA_VERSION:
                errors.append(f"Database version must be <= {LATEST_SCHEMA_VERSION}")
            if options.database_name is not None and not options.database_name.strip():
                errors.append("Database name cannot be empty")

        if config.provider == ProviderKind.SUPABASE.value:
            url = options.url or self.environ.get("LIGHTNOTE_SUPABASE_URL")
            anon_key = options.anon_key or self.environ.get("LIGHTNOTE_SUPABASE_ANON_KEY")
            if not url:
                errors.append("Supabase URL is required")
            if not anon_key:
                errors.append("Supabase anonymous key is required")
            if url and not url.startswith("https://"):
                errors.append("Supabase URL must use HTTPS")

        return ConfigValidation(is_valid=not errors, errors=errors)

    # Current provider

    def get_current_provider(self) -> Optional[DatabaseProvider]:
        return self._current_provider

    def get_current_config(self) -> Optional[DatabaseConfig]:
        if self._current_config is None:
            return None
        return self._current_config.model_copy(deep=True)

    def get_current_provider_info(self) -> Optional[ProviderInfo]:
        if self._current_provider is None:
            return None
        return self._current_provider.get_info()

    # Lifecycle

    def _checked_config(self, config: ConfigInput, operation: str) -> DatabaseConfig:
        validation = self.validate_config(config)
        provider = config.get("provider") if isinstance(config, dict) else config.provider
        if not validation.is_valid:
            code = (
                ErrorCode.PROVIDER_NOT_SUPPORTED
                if provider and not self.is_provider_supported(provider)
                else ErrorCode.INVALID_CONFIG
            )
            raise ConfigurationError(
                f"Invalid configuration: {', '.join(validation.errors)}",
                provider,
                errors=validation.errors,
                code=code,
                context={"operation": operation},
            )
        if isinstance(config, dict):
            config = DatabaseConfig.model_validate(config)
        return self._resolved(config).model_copy(deep=True)

    def _resolved(self, config: DatabaseConfig) -> DatabaseConfig:
        provider = self.resolve_provider_name(config.provider)
        if provider == config.provider:
            return config
        return config.model_copy(update={"provider": provider})

    async def _build_provider(self, config: DatabaseConfig) -> DatabaseProvider:
        provider_cls = self._registry[config.provider]
        provider = provider_cls(config.options)
        try:
            await provider.initialize()
        except DatabaseError:
            raise
        except Exception as e:
            raise ProviderConnectionError(
                f"Failed to create {config.provider} provider: {e}",
                config.provider,
                original_error=e,
                context={"operation": "create_provider"},
            ) from e
        logger.info("Database provider '%s' initialized", config.provider)
        return provider

    async def _close_quietly(self, provider: DatabaseProvider) -> None:
        try:
            await provider.close()
        except Exception:
            logger.warning("Failed to close %s provider", provider.name, exc_info=True)

    async def create_provider(self, config: ConfigInput) -> DatabaseProvider:
        """Return an initialised provider for ``config`` and make it current.

        An active provider with an identical configuration is returned as
        is. An active provider of a different kind is closed first; one of
        the same kind with different options is closed once the new one is
        up.

        Raises:
            ConfigurationError: If the configuration is invalid or names an
                unsupported provider. Nothing is opened in that case.
            ProviderConnectionError: If the provider fails to initialise.
        """
        config = self._checked_config(config, "create_provider")

        current = self._current_provider
        if current is not None and self._current_config.provider != config.provider:
            await self._close_current()
            current = None

        if current is not None and config.is_same_as(self._current_config):
            return current

        provider = await self._build_provider(config)
        self._current_provider = provider
        self._current_config = config
        if current is not None:
            await self._close_quietly(current)
        return provider

    async def switch_provider(self, new_config: ConfigInput) -> DatabaseProvider:
        """Replace the active provider with one built from ``new_config``.

        Only one switch may run at a time. The new provider is opened
        before the old one is closed; if the data migration step fails the
        new provider is closed again and the old one stays current.

        Raises:
            DatabaseError: CONCURRENT_MODIFICATION (retryable) when another
                switch is in progress.
            SyncError: If migrating data between providers fails.
        """
        provider_name = (
            new_config.get("provider") if isinstance(new_config, dict)
            else new_config.provider
        )
        if self._switch_in_progress:
            raise DatabaseError(
                "Provider switch already in progress",
                ErrorCode.CONCURRENT_MODIFICATION,
                provider_name,
                category=ErrorCategory.CONFIGURATION,
                context={"operation": "switch_provider"},
                is_retryable=True,
                retry_after_ms=SWITCH_RETRY_AFTER_MS,
            )

        self._switch_in_progress = True
        try:
            config = self._checked_config(new_config, "switch_provider")
            old_provider = self._current_provider
            old_config = self._current_config
            logger.info(
                "Switching database provider from '%s' to '%s'",
                old_config.provider if old_config else "none", config.provider,
            )

            if old_provider is not None and config.is_same_as(old_config):
                return old_provider

            new_provider = await self._build_provider(config)

            if old_provider is not None and old_config.provider != config.provider:
                try:
                    await self.migrate_data(old_provider, new_provider, old_config, config)
                except Exception as e:
                    await self._close_quietly(new_provider)
                    raise SyncError(
                        f"Data migration failed: {e}",
                        config.provider,
                        context={"operation": "switch_provider"},
                        original_error=e,
                        is_retryable=False,
                    ) from e

            self._current_provider = new_provider
            self._current_config = config
            if old_provider is not None:
                await self._close_quietly(old_provider)

            logger.info("Switched to '%s' provider", config.provider)
            return new_provider
        except DatabaseError:
            raise
        except Exception as e:
            raise SyncError(
                f"Failed to switch to {provider_name} provider: {e}",
                provider_name,
                context={"operation": "switch_provider"},
                original_error=e,
                is_retryable=True,
            ) from e
        finally:
            self._switch_in_progress = False

    async def migrate_data(
        self,
        source: DatabaseProvider,
        target: DatabaseProvider,
        source_config: DatabaseConfig,
        target_config: DatabaseConfig,
    ) -> None:
        """Move data between provider kinds.

        Not implemented yet: records are not transferred, only logged.
        """
        logger.warning(
            "Data migration from '%s' to '%s' is not implemented; "
            "records are not transferred",
            source_config.provider, target_config.provider,
        )

    async def _close_current(self) -> None:
        if self._current_provider is not None:
            await self._close_quietly(self._current_provider)
        self._current_provider = None
        self._current_config = None

    async def close(self) -> None:
        """Close the active provider, if any."""
        await self._close_current()
        logger.info("Database factory closed")
