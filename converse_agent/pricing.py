"""Model pricing and usage cost calculation."""

from dataclasses import dataclass
from typing import Iterable

from converse_agent.config import ModelPriceConfig
from converse_agent.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class ModelPrice:
    """USD price per 1000 tokens."""

    match: str
    input: float
    output: float
    cache_read: float = 0.0
    cache_write: float = 0.0


_SONNET = (0.003, 0.015, 0.0003, 0.00375)
_HAIKU = (0.0008, 0.004, 0.00008, 0.001)
_OPUS = (0.015, 0.075, 0.0015, 0.01875)

DEFAULT_PRICES: tuple[ModelPrice, ...] = (
    ModelPrice("claude-3-7-sonnet", *_SONNET),
    ModelPrice("claude-3-5-sonnet", *_SONNET),
    ModelPrice("claude-3-5-haiku", *_HAIKU),
    ModelPrice("claude-3-haiku", *_HAIKU),
    ModelPrice("claude-3-sonnet", *_SONNET),
    ModelPrice("claude-3-opus", *_OPUS),
    ModelPrice("claude-opus-4-1", *_OPUS),
    ModelPrice("claude-opus-4", *_OPUS),
    ModelPrice("claude-sonnet-4", *_SONNET),
    ModelPrice("nova-pro", 0.0008, 0.0032, 0.0002, 0.0),
    ModelPrice("nova-lite", 0.00006, 0.00024, 0.000015, 0.0),
    ModelPrice("nova-micro", 0.000035, 0.00014, 0.00000875, 0.0),
)


class CostTable:
    """Price lookup keyed by model id (substring match, first entry wins)."""

    def __init__(
        self,
        prices: Iterable[ModelPrice] = DEFAULT_PRICES,
        overrides: Iterable[ModelPriceConfig] | None = None,
    ):
        entries = [
            ModelPrice(
                match=item.match,
                input=item.input,
                output=item.output,
                cache_read=item.cache_read,
                cache_write=item.cache_write,
            )
            for item in overrides or []
        ]
        entries.extend(prices)
        self._prices: list[ModelPrice] = entries

    def lookup(self, model_id: str) -> ModelPrice | None:
        lowered = (model_id or "").lower()
        for entry in self._prices:
            if entry.match.lower() in lowered:
                return entry
        return None

    def price(
        self,
        model_id: str,
        input_tokens: int,
        output_tokens: int,
        cache_read_tokens: int | None = 0,
        cache_write_tokens: int | None = 0,
    ) -> float | None:
        """Cost in USD, or ``None`` when the model has no price entry."""
        entry = self.lookup(model_id)
        if entry is None:
            log.debug("No price entry for model", model_id=model_id)
            return None
        return (
            input_tokens * entry.input
            + output_tokens * entry.output
            + (cache_read_tokens or 0) * entry.cache_read
            + (cache_write_tokens or 0) * entry.cache_write
        ) / 1000


def format_cost(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"${value:.6f}"
