"""User settings: provider selection, model, timeout and API keys."""

from __future__ import annotations

import logging
import os
from typing import Protocol

from .config import CREDENTIAL_ENV_TEMPLATE, DEFAULT_TIMEOUT_SECONDS
from .providers import REGISTRY, ProviderDescriptor, ProviderRegistry
from .storage import SessionStore

logger = logging.getLogger(__name__)

PROVIDER_KEY = "settings.provider"
MODEL_KEY = "settings.model"
TIMEOUT_KEY = "settings.request_timeout"
STREAM_KEY = "settings.stream"
CREDENTIAL_KEY = "settings.api_key.{provider}"


class SettingsSource(Protocol):
    """Read side of the settings consumed by the orchestrator."""

    def get_credential(self) -> str | None: ...

    def get_selected_provider(self) -> str: ...

    def get_model_name(self) -> str: ...

    def get_request_timeout_seconds(self) -> int: ...

    def get_stream_responses(self) -> bool: ...


def mask_credential(key: str) -> str:
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


def credential_env_var(provider_id: str) -> str:
    return CREDENTIAL_ENV_TEMPLATE.format(provider=provider_id.upper().replace("-", "_"))


class Settings:
    """Settings persisted in the session database's key-value table.

    API keys can also come from ``POLYCHAT_<PROVIDER>_API_KEY``, which wins
    over a stored key.
    """

    def __init__(self, store: SessionStore, registry: ProviderRegistry = REGISTRY):
        self.store = store
        self.registry = registry

    # -- read contract -------------------------------------------------------

    def get_selected_provider(self) -> str:
        provider_id = self.store.get_value(PROVIDER_KEY)
        if provider_id and self.registry.has(provider_id):
            return provider_id
        return self.registry.default().provider_id

    def get_provider(self) -> ProviderDescriptor:
        return self.registry.get(self.get_selected_provider())

    def get_model_name(self) -> str:
        return self.store.get_value(MODEL_KEY) or self.get_provider().default_model

    def get_credential(self, provider_id: str | None = None) -> str | None:
        provider_id = provider_id or self.get_selected_provider()
        key = os.environ.get(credential_env_var(provider_id), "").strip()
        if not key:
            key = (self.store.get_value(CREDENTIAL_KEY.format(provider=provider_id)) or "").strip()
        return key or None

    def get_request_timeout_seconds(self) -> int:
        value = self.store.get_value(TIMEOUT_KEY)
        try:
            return int(value) if value else DEFAULT_TIMEOUT_SECONDS
        except ValueError:
            logger.warning("Ignoring invalid stored timeout %r", value)
            return DEFAULT_TIMEOUT_SECONDS

    def get_stream_responses(self) -> bool:
        return self.store.get_value(STREAM_KEY) != "0"

    # -- write side ----------------------------------------------------------

    def set_credential(self, key: str, provider_id: str | None = None) -> bool:
        """Store an API key; returns whether it looks valid for the provider."""
        key = key.strip()
        if not key:
            raise ValueError("API key must not be empty")
        provider = self.registry.get(provider_id or self.get_selected_provider())
        self.store.set_value(CREDENTIAL_KEY.format(provider=provider.provider_id), key)
        return provider.credential_validator(key)

    def clear_credential(self, provider_id: str | None = None):
        provider_id = provider_id or self.get_selected_provider()
        self.store.delete_value(CREDENTIAL_KEY.format(provider=provider_id))

    def masked_credential(self, provider_id: str | None = None) -> str:
        key = self.get_credential(provider_id)
        return mask_credential(key) if key else ""

    def set_provider(self, provider_id: str) -> str:
        """Select a provider and return the model that will be used with it.

        The saved model is kept only if the new provider accepts it; otherwise
        the provider's default model replaces it.
        """
        provider = self.registry.get(provider_id)
        self.store.set_value(PROVIDER_KEY, provider.provider_id)

        saved = self.store.get_value(MODEL_KEY) or ""
        if provider.accepts_model(saved):
            return saved

        logger.info(
            "Model %r does not fit %s, switching to %s",
            saved, provider.display_name, provider.default_model,
        )
        self.store.set_value(MODEL_KEY, provider.default_model)
        return provider.default_model

    def set_model_name(self, model: str):
        model = model.strip()
        self.registry.validate_model(self.get_provider(), model)
        self.store.set_value(MODEL_KEY, model)

    def set_request_timeout(self, seconds: int):
        if seconds <= 0:
            raise ValueError("Timeout must be a positive number of seconds")
        self.store.set_value(TIMEOUT_KEY, str(seconds))

    def set_stream_responses(self, enabled: bool):
        self.store.set_value(STREAM_KEY, "1" if enabled else "0")
