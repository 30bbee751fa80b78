"""Known model families and their prompt-cache and thinking capabilities."""

from dataclasses import dataclass
from typing import Literal

CacheableField = Literal["messages", "system", "tools"]

_ALL_FIELDS: tuple[CacheableField, ...] = ("messages", "system", "tools")


@dataclass(frozen=True)
class ModelDefinition:
    match: str
    name: str
    cacheable_fields: tuple[CacheableField, ...] = ()
    supports_thinking: bool = False


# First substring match wins, so more specific ids come first.
MODEL_DEFINITIONS: tuple[ModelDefinition, ...] = (
    ModelDefinition("claude-opus-4-1", "Claude Opus 4.1", _ALL_FIELDS, supports_thinking=True),
    ModelDefinition("claude-opus-4", "Claude Opus 4", _ALL_FIELDS, supports_thinking=True),
    ModelDefinition("claude-sonnet-4", "Claude Sonnet 4", _ALL_FIELDS, supports_thinking=True),
    ModelDefinition("claude-3-7-sonnet", "Claude 3.7 Sonnet", _ALL_FIELDS, supports_thinking=True),
    ModelDefinition("claude-3-5-sonnet", "Claude 3.5 Sonnet"),
    ModelDefinition("claude-3-5-haiku", "Claude 3.5 Haiku", _ALL_FIELDS),
    ModelDefinition("claude-3-haiku", "Claude 3 Haiku"),
    ModelDefinition("claude-3-opus", "Claude 3 Opus"),
    ModelDefinition("nova-premier", "Amazon Nova Premier", ("messages", "system")),
    ModelDefinition("nova-pro", "Amazon Nova Pro", ("messages", "system")),
    ModelDefinition("nova-lite", "Amazon Nova Lite", ("messages", "system")),
    ModelDefinition("nova-micro", "Amazon Nova Micro", ("messages", "system")),
)


def find_model(model_id: str) -> ModelDefinition | None:
    lowered = (model_id or "").lower()
    for definition in MODEL_DEFINITIONS:
        if definition.match in lowered:
            return definition
    return None


def get_cacheable_fields(model_id: str) -> tuple[CacheableField, ...]:
    definition = find_model(model_id)
    return definition.cacheable_fields if definition else ()


def is_prompt_cache_supported(model_id: str) -> bool:
    return bool(get_cacheable_fields(model_id))


def is_thinking_supported(model_id: str) -> bool:
    definition = find_model(model_id)
    return bool(definition and definition.supports_thinking)
