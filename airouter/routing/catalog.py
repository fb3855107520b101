"""Provider catalog - static descriptions of providers and their models.

The catalog is loaded once at startup and never mutated. Live state
(quota consumption, rate windows) is kept elsewhere; the catalog only
answers "what exists and what does it cost".

Default catalog:
- openai: gpt-4-turbo (95), gpt-4o (93)
- anthropic: claude-3-opus (96), claude-3-sonnet (92)
- openrouter: llama-3.1-70b (85), mixtral-8x22b (87)
- huggingface (free tier): mixtral-8x7b-instruct
- ollama (free tier, local): llama3.1:8b
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog

from airouter.config import PLACEHOLDER_CREDENTIALS, Settings

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ModelDescriptor:
    """One model offered by a provider.

    Attributes:
        provider_id: Owning provider (e.g. "anthropic")
        model_id: Provider model identifier (e.g. "claude-3-opus")
        endpoint: Base URL the call collaborator should use
        credential_ref: Name of the credential setting; None for local models
        cost_per_token: USD per token (0 for free-tier models)
        accuracy: Accuracy score, 0-100
        max_tokens: Context window of the model
        availability: Observed availability percentage, 0-100
        region: Hosting region, or None if unrestricted
    """

    provider_id: str
    model_id: str
    endpoint: str
    credential_ref: str | None
    cost_per_token: float
    accuracy: float
    max_tokens: int
    availability: float = 100.0
    region: str | None = None

    def __post_init__(self) -> None:
        if not self.provider_id or not self.model_id:
            raise ValueError("provider_id and model_id are required")
        if self.cost_per_token < 0:
            raise ValueError("cost_per_token cannot be negative")
        if not 0 <= self.accuracy <= 100:
            raise ValueError("accuracy must be between 0 and 100")
        if not 0 <= self.availability <= 100:
            raise ValueError("availability must be between 0 and 100")
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be positive")


@dataclass(frozen=True)
class ProviderProfile:
    """A provider with its models, daily quota and published rate limits."""

    provider_id: str
    models: tuple[ModelDescriptor, ...]
    daily_quota: int
    requests_per_minute: int = 0
    tokens_per_minute: int = 0
    free_tier: bool = False

    def __post_init__(self) -> None:
        if self.daily_quota < 0:
            raise ValueError("daily_quota cannot be negative")
        for model in self.models:
            if model.provider_id != self.provider_id:
                raise ValueError(
                    f"model {model.model_id} belongs to {model.provider_id}, "
                    f"not {self.provider_id}"
                )
        if self.free_tier and any(m.cost_per_token > 0 for m in self.models):
            raise ValueError("free-tier providers must only list zero-cost models")


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialProvider(Protocol):
    """Resolves a credential reference to a secret value."""

    def resolve(self, credential_ref: str) -> str | None: ...


def is_usable_credential(value: str | None) -> bool:
    """Return False for missing or placeholder credential values."""
    if value is None:
        return False
    return value.strip().lower() not in PLACEHOLDER_CREDENTIALS


class SettingsCredentialProvider:
    """Looks credentials up on Settings by reference name.

    ``OPENAI_API_KEY`` resolves to ``settings.openai_api_key``.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def resolve(self, credential_ref: str) -> str | None:
        secret = getattr(self._settings, credential_ref.lower(), None)
        if secret is None:
            return None
        if hasattr(secret, "get_secret_value"):
            return secret.get_secret_value()
        return str(secret)


class StaticCredentialProvider:
    """Credential lookup from a plain mapping (tests, embedded use)."""

    def __init__(self, credentials: dict[str, str]) -> None:
        self._credentials = dict(credentials)

    def resolve(self, credential_ref: str) -> str | None:
        return self._credentials.get(credential_ref)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class ProviderCatalog:
    """Immutable set of provider profiles, keyed by provider id."""

    providers: list[ProviderProfile] = field(default_factory=list)

    def __post_init__(self) -> None:
        ids = [p.provider_id for p in self.providers]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate provider ids in catalog")
        self._by_id = {p.provider_id: p for p in self.providers}

    def get(self, provider_id: str) -> ProviderProfile | None:
        return self._by_id.get(provider_id)

    def paid_profiles(self) -> list[ProviderProfile]:
        return [p for p in self.providers if not p.free_tier]

    def free_tier_profiles(self) -> list[ProviderProfile]:
        return [p for p in self.providers if p.free_tier]

    def find_model(self, provider_id: str, model_id: str) -> ModelDescriptor | None:
        profile = self._by_id.get(provider_id)
        if profile is None:
            return None
        return next((m for m in profile.models if m.model_id == model_id), None)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderCatalog:
        """Build a catalog from the JSON document layout.

        Layout::

            {"providers": [{"provider_id": "...", "daily_quota": 1000000,
                            "free_tier": false, "requests_per_minute": 100,
                            "tokens_per_minute": 10000,
                            "models": [{"model_id": "...", ...}]}]}
        """
        profiles: list[ProviderProfile] = []
        for raw in data.get("providers", []):
            provider_id = raw["provider_id"]
            models = tuple(
                ModelDescriptor(provider_id=provider_id, **m) for m in raw.get("models", [])
            )
            profiles.append(
                ProviderProfile(
                    provider_id=provider_id,
                    models=models,
                    daily_quota=int(raw["daily_quota"]),
                    requests_per_minute=int(raw.get("requests_per_minute", 0)),
                    tokens_per_minute=int(raw.get("tokens_per_minute", 0)),
                    free_tier=bool(raw.get("free_tier", False)),
                )
            )
        return cls(providers=profiles)

    @classmethod
    def from_file(cls, path: str | Path) -> ProviderCatalog:
        catalog = cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))
        log.info(
            "catalog.loaded",
            path=str(path),
            providers=[p.provider_id for p in catalog.providers],
        )
        return catalog

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderCatalog:
        """Load the configured catalog file, or fall back to the defaults."""
        if settings.catalog_path:
            return cls.from_file(settings.catalog_path)
        return default_catalog(settings)


def default_catalog(settings: Settings) -> ProviderCatalog:
    """Built-in provider catalog with quotas taken from settings."""
    level1 = settings.level1_daily_quota
    level2 = settings.level2_daily_quota

    openai = ProviderProfile(
        provider_id="openai",
        models=(
            ModelDescriptor(
                provider_id="openai",
                model_id="gpt-4-turbo",
                endpoint="https://api.openai.com/v1/chat/completions",
                credential_ref="OPENAI_API_KEY",
                cost_per_token=0.00003,
                accuracy=95,
                max_tokens=128_000,
                availability=99,
            ),
            ModelDescriptor(
                provider_id="openai",
                model_id="gpt-4o",
                endpoint="https://api.openai.com/v1/chat/completions",
                credential_ref="OPENAI_API_KEY",
                cost_per_token=0.000015,
                accuracy=93,
                max_tokens=128_000,
                availability=99,
            ),
        ),
        daily_quota=settings.daily_quota_for("openai", level1),
        requests_per_minute=3500,
        tokens_per_minute=350_000,
    )
    anthropic = ProviderProfile(
        provider_id="anthropic",
        models=(
            ModelDescriptor(
                provider_id="anthropic",
                model_id="claude-3-opus",
                endpoint="https://api.anthropic.com/v1/messages",
                credential_ref="ANTHROPIC_API_KEY",
                cost_per_token=0.000075,
                accuracy=96,
                max_tokens=200_000,
                availability=98,
            ),
            ModelDescriptor(
                provider_id="anthropic",
                model_id="claude-3-sonnet",
                endpoint="https://api.anthropic.com/v1/messages",
                credential_ref="ANTHROPIC_API_KEY",
                cost_per_token=0.000015,
                accuracy=92,
                max_tokens=200_000,
                availability=99,
            ),
        ),
        # Anthropic's premium pool is sized at 80% of the level-1 default
        daily_quota=settings.daily_quota_for("anthropic", int(level1 * 0.8)),
        requests_per_minute=2000,
        tokens_per_minute=200_000,
    )
    openrouter = ProviderProfile(
        provider_id="openrouter",
        models=(
            ModelDescriptor(
                provider_id="openrouter",
                model_id="llama-3.1-70b",
                endpoint="https://openrouter.ai/api/v1/chat/completions",
                credential_ref="OPENROUTER_API_KEY",
                cost_per_token=0.000004,
                accuracy=85,
                max_tokens=128_000,
                availability=95,
            ),
            ModelDescriptor(
                provider_id="openrouter",
                model_id="mixtral-8x22b",
                endpoint="https://openrouter.ai/api/v1/chat/completions",
                credential_ref="OPENROUTER_API_KEY",
                cost_per_token=0.000006,
                accuracy=87,
                max_tokens=65_000,
                availability=93,
            ),
        ),
        daily_quota=settings.daily_quota_for("openrouter", level2),
        requests_per_minute=1000,
        tokens_per_minute=100_000,
    )
    huggingface = ProviderProfile(
        provider_id="huggingface",
        models=(
            ModelDescriptor(
                provider_id="huggingface",
                model_id="mixtral-8x7b-instruct",
                endpoint="https://api-inference.huggingface.co/models/mistralai/Mixtral-8x7B-Instruct-v0.1",
                credential_ref="HUGGINGFACE_API_KEY",
                cost_per_token=0.0,
                accuracy=80,
                max_tokens=32_000,
                availability=90,
            ),
        ),
        daily_quota=settings.daily_quota_for("huggingface", level1),
        requests_per_minute=60,
        free_tier=True,
    )
    ollama = ProviderProfile(
        provider_id="ollama",
        models=(
            ModelDescriptor(
                provider_id="ollama",
                model_id="llama3.1:8b",
                endpoint="http://localhost:11434/api/chat",
                credential_ref=None,
                cost_per_token=0.0,
                accuracy=75,
                max_tokens=8_192,
                availability=95,
            ),
        ),
        daily_quota=settings.daily_quota_for("ollama", level2),
        free_tier=True,
    )
    return ProviderCatalog(providers=[openai, anthropic, openrouter, huggingface, ollama])
