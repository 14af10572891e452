"""Static catalog of chat-completion providers.

Everything that differs between backends lives here: base URL, auth headers,
default model and the rule a model name has to satisfy. Adding a provider means
adding one descriptor to ``_BUILTIN_PROVIDERS``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .errors import ModelUnsupported, NotFound

HeaderBuilder = Callable[[str], dict[str, str]]
ModelValidator = Callable[[str], bool]

MIN_CREDENTIAL_LENGTH = 20


@dataclass(frozen=True)
class ProviderDescriptor:
    provider_id: str
    display_name: str
    base_url: str
    chat_path: str
    default_model: str
    header_builder: HeaderBuilder
    model_validator: ModelValidator
    model_hint: str
    example_models: tuple[str, ...] = ()
    models_path: str | None = None
    credential_validator: Callable[[str], bool] = field(
        default=lambda key: len(key.strip()) >= MIN_CREDENTIAL_LENGTH
    )

    @property
    def chat_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.chat_path}"

    @property
    def models_url(self) -> str | None:
        """Model listing endpoint, if the provider exposes one."""
        if self.models_path is None:
            return None
        return f"{self.base_url.rstrip('/')}{self.models_path}"

    def headers(self, credential: str) -> dict[str, str]:
        """Auth headers plus the JSON content type every provider expects."""
        headers = dict(self.header_builder(credential))
        headers["Content-Type"] = "application/json"
        return headers

    def accepts_model(self, model: str) -> bool:
        return bool(model) and self.model_validator(model)


def bearer_headers(credential: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {credential}"}


def prefix_validator(prefix: str) -> ModelValidator:
    """Flat namespace: every model name starts with ``prefix``."""

    def validate(model: str) -> bool:
        return model.startswith(prefix) and len(model) > len(prefix)

    return validate


def namespace_validator(vendors: frozenset[str]) -> ModelValidator:
    """Namespaced models of the form ``vendor/model-name`` with a known vendor."""

    def validate(model: str) -> bool:
        vendor, sep, name = model.partition("/")
        return bool(sep) and bool(name) and "/" not in name and vendor in vendors

    return validate


def _openrouter_headers(credential: str) -> dict[str, str]:
    headers = bearer_headers(credential)
    headers["HTTP-Referer"] = "https://github.com/polychat/polychat"
    headers["X-Title"] = "polychat"
    return headers


OPENROUTER_VENDORS = frozenset(
    {
        "anthropic",
        "openai",
        "google",
        "meta-llama",
        "mistralai",
        "deepseek",
        "qwen",
        "x-ai",
        "cohere",
        "z-ai",
    }
)

_BUILTIN_PROVIDERS = (
    ProviderDescriptor(
        provider_id="glm",
        display_name="GLM (Zhipu AI)",
        base_url="https://open.bigmodel.cn/api/paas/v4",
        chat_path="/chat/completions",
        default_model="glm-4.7",
        header_builder=bearer_headers,
        model_validator=prefix_validator("glm-"),
        model_hint="GLM model names start with 'glm-', e.g. glm-4.7 or glm-4-flash.",
        example_models=("glm-4.7", "glm-4-plus", "glm-4-flash", "glm-4-air"),
    ),
    ProviderDescriptor(
        provider_id="openrouter",
        display_name="OpenRouter",
        base_url="https://openrouter.ai/api/v1",
        chat_path="/chat/completions",
        default_model="anthropic/claude-3.5-sonnet",
        header_builder=_openrouter_headers,
        model_validator=namespace_validator(OPENROUTER_VENDORS),
        model_hint=(
            "OpenRouter models use the form vendor/model-name with vendor one of: "
            + ", ".join(sorted(OPENROUTER_VENDORS))
            + "."
        ),
        example_models=(
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3.5-sonnet:beta",
            "openai/gpt-4o",
            "openai/gpt-4o-mini",
            "google/gemini-flash-1.5",
            "meta-llama/llama-3.1-70b",
            "deepseek/deepseek-chat",
        ),
        models_path="/models",
    ),
)

DEFAULT_PROVIDER_ID = "glm"


class ProviderRegistry:
    """Read-only lookup over a fixed set of provider descriptors."""

    def __init__(
        self,
        providers: tuple[ProviderDescriptor, ...] = _BUILTIN_PROVIDERS,
        default_id: str = DEFAULT_PROVIDER_ID,
    ):
        self._providers = {p.provider_id: p for p in providers}
        if default_id not in self._providers:
            raise ValueError(f"Default provider {default_id!r} is not registered")
        self._default_id = default_id

    def get(self, provider_id: str) -> ProviderDescriptor:
        try:
            return self._providers[provider_id]
        except KeyError:
            raise NotFound(f"Unknown provider: {provider_id}") from None

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def list(self) -> list[ProviderDescriptor]:
        return list(self._providers.values())

    def default(self) -> ProviderDescriptor:
        return self._providers[self._default_id]

    @staticmethod
    def validate_model(provider: ProviderDescriptor, model: str) -> None:
        """Raise ModelUnsupported with the provider's correction hint."""
        if not provider.accepts_model(model):
            raise ModelUnsupported(
                f"Model {model!r} is not supported by {provider.display_name}",
                hint=provider.model_hint,
            )


REGISTRY = ProviderRegistry()
