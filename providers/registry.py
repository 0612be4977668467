"""Provider/model catalog and backend resolution.

Specifiers look like ``provider:model`` (``google:gemini-2.0-flash``).
The model id may itself contain colons (``aide:us.anthropic...-v1:0``), so
only the first colon separates the two parts.

Validation is a pure lookup against the static catalog plus a credential
check; it runs before any backend is built, so a bad specifier never costs
a network round-trip.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from agent.errors import ConfigurationError
from agent.settings import Settings
from providers.base import Backend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelEntry:
    id: str
    label: str = ""
    enabled: bool = True
    tool_calling: bool = True


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    models: Tuple[ModelEntry, ...]

    def model(self, model_id: str) -> Optional[ModelEntry]:
        for entry in self.models:
            if entry.id == model_id:
                return entry
        return None


PROVIDERS: Dict[str, ProviderMeta] = {
    "google": ProviderMeta("google", "Google", (
        ModelEntry("gemini-2.0-flash", "Gemini 2.0 Flash", enabled=True, tool_calling=False),
    )),
    "openai": ProviderMeta("openai", "OpenAI", (
        ModelEntry("gpt-4o-mini", "GPT-4o mini", enabled=False, tool_calling=True),
        ModelEntry("gpt-4o", "GPT-4o", enabled=False, tool_calling=True),
    )),
    "aide": ProviderMeta("aide", "AIDE", (
        ModelEntry("us.anthropic.claude-3-7-sonnet-20250219-v1:0",
                   "Claude 3.7 Sonnet (AIDE)", enabled=True, tool_calling=False),
        ModelEntry("us.anthropic.claude-sonnet-4-20250514-v1:0",
                   "Claude 4 Sonnet (AIDE)", enabled=True, tool_calling=False),
        ModelEntry("us.anthropic.claude-opus-4-20250514-v1:0",
                   "Claude 4 Opus (AIDE)", enabled=True, tool_calling=False),
        ModelEntry("gpt-4o", "GPT-4o (AIDE)", enabled=True, tool_calling=False),
        ModelEntry("gpt-4o-mini", "GPT-4o mini (AIDE)", enabled=True, tool_calling=False),
    )),
}

FALLBACK_SPECIFIER = "google:gemini-2.0-flash"


def to_specifier(provider: str, model: str) -> str:
    return f"{provider}:{model}"


def first_enabled_specifier(providers: Optional[Dict[str, ProviderMeta]] = None) -> str:
    for meta in (providers or PROVIDERS).values():
        for entry in meta.models:
            if entry.enabled:
                return to_specifier(meta.id, entry.id)
    return FALLBACK_SPECIFIER


def parse_specifier(spec: str) -> Tuple[str, str]:
    """Split ``provider:model``. Raises ConfigurationError when malformed."""
    provider, sep, model = (spec or "").partition(":")
    provider, model = provider.strip(), model.strip()
    if not sep or not provider or not model:
        raise ConfigurationError(
            f"Invalid model specifier '{spec}': expected 'provider:model'", specifier=spec,
        )
    return provider, model


def default_specifier(settings: Optional[Settings] = None) -> str:
    if settings is not None and settings.default_model:
        return settings.default_model
    return first_enabled_specifier()


def model_entry(spec: str) -> Optional[ModelEntry]:
    try:
        provider, model = parse_specifier(spec)
    except ConfigurationError:
        return None
    meta = PROVIDERS.get(provider)
    return meta.model(model) if meta else None


def tool_calling_enabled(spec: str) -> bool:
    entry = model_entry(spec)
    return bool(entry and entry.tool_calling)


def list_models() -> List[Dict[str, object]]:
    rows = []
    for meta in PROVIDERS.values():
        for entry in meta.models:
            rows.append({
                "specifier": to_specifier(meta.id, entry.id),
                "provider": meta.label,
                "label": entry.label or entry.id,
                "enabled": entry.enabled,
                "tool_calling": entry.tool_calling,
            })
    return rows


def _missing_credentials(provider: str, settings: Settings) -> Optional[str]:
    if provider == "openai" and not settings.openai_api_key:
        return "Missing OPENAI_API_KEY for OpenAI provider."
    if provider == "google" and not settings.google_api_key:
        return "Missing GOOGLE_API_KEY for Google provider."
    if provider == "aide":
        if not (settings.aide_api_key or settings.entra_configured):
            return ("Missing AIDE_API_KEY (or AIDE_ENTRA_* client credentials) "
                    "for AIDE provider.")
        if not settings.aide_use_case_id or not settings.aide_solma_id:
            return "Missing AIDE_USE_CASE_ID / AIDE_SOLMA_ID for AIDE provider."
    return None


def validate(spec: str, settings: Settings) -> Tuple[str, str, ModelEntry]:
    """Check a specifier against the catalog and configured credentials.

    Returns:
        (provider, model, entry)

    Raises:
        ConfigurationError: unknown provider, unknown or disabled model,
            missing credential.
    """
    provider, model = parse_specifier(spec)
    meta = PROVIDERS.get(provider)
    if meta is None:
        raise ConfigurationError(f"Unsupported provider '{provider}' in '{spec}'.", specifier=spec)
    entry = meta.model(model)
    if entry is None:
        raise ConfigurationError(f"Unsupported model '{spec}'.", specifier=spec)
    if not entry.enabled:
        raise ConfigurationError(f"Model '{spec}' is disabled.", specifier=spec)
    missing = _missing_credentials(provider, settings)
    if missing:
        raise ConfigurationError(missing, specifier=spec)
    return provider, model, entry


BackendFactory = Callable[[str, ModelEntry, Settings], Backend]


def _openai_factory(model: str, entry: ModelEntry, settings: Settings) -> Backend:
    from providers.openai_chat import OpenAIChatBackend
    return OpenAIChatBackend.for_openai(model, entry, settings)


def _google_factory(model: str, entry: ModelEntry, settings: Settings) -> Backend:
    from providers.openai_chat import OpenAIChatBackend
    return OpenAIChatBackend.for_google(model, entry, settings)


def _aide_factory(model: str, entry: ModelEntry, settings: Settings) -> Backend:
    from providers.aide import AideBackend
    from providers.base import StreamingEmulation
    return StreamingEmulation(AideBackend.from_settings(model, entry, settings))


BACKEND_FACTORIES: Dict[str, BackendFactory] = {
    "openai": _openai_factory,
    "google": _google_factory,
    "aide": _aide_factory,
}


def resolve(spec: str, settings: Settings) -> Backend:
    """Validate *spec* and build its backend. No network I/O happens here."""
    provider, model, entry = validate(spec, settings)
    factory = BACKEND_FACTORIES.get(provider)
    if factory is None:
        raise ConfigurationError(f"No backend registered for provider '{provider}'.", specifier=spec)
    logger.debug("[AI] resolved %s", spec)
    return factory(model, entry, settings)
