"""Guardrail checker interface and a pattern-based implementation."""

import re
from dataclasses import dataclass
from typing import Literal, Protocol

from converse_agent.config import GuardrailConfig
from converse_agent.exceptions import GuardrailCheckError
from converse_agent.logging import get_logger

log = get_logger(__name__)

Direction = Literal["INPUT", "OUTPUT"]


@dataclass(frozen=True)
class GuardrailDecision:
    intervened: bool
    remediation: str | None = None
    reason: str = ""


class GuardrailChecker(Protocol):
    async def check(self, direction: Direction, text: str) -> GuardrailDecision: ...


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(pattern), re.IGNORECASE)


class PatternGuardrailChecker:
    """Intervene when content matches a configured deny pattern."""

    def __init__(
        self,
        input_patterns: list[str] | None = None,
        output_patterns: list[str] | None = None,
        remediation: str = "Content blocked by guardrail.",
    ):
        self._patterns: dict[str, list[re.Pattern[str]]] = {
            "INPUT": [_compile_pattern(p) for p in input_patterns or [] if str(p).strip()],
            "OUTPUT": [_compile_pattern(p) for p in output_patterns or [] if str(p).strip()],
        }
        self.remediation = remediation

    @classmethod
    def from_config(cls, config: GuardrailConfig) -> "PatternGuardrailChecker":
        return cls(
            input_patterns=config.input_patterns,
            output_patterns=config.output_patterns,
            remediation=config.remediation,
        )

    async def check(self, direction: Direction, text: str) -> GuardrailDecision:
        for pattern in self._patterns.get(direction, []):
            if pattern.search(text or ""):
                log.warning("Guardrail intervened", direction=direction, pattern=pattern.pattern)
                return GuardrailDecision(
                    intervened=True,
                    remediation=self.remediation,
                    reason=f"matched {pattern.pattern}",
                )
        return GuardrailDecision(intervened=False)


async def run_check(checker: GuardrailChecker, direction: Direction, text: str) -> GuardrailDecision:
    """Run a guardrail check, wrapping checker failures.

    Raises:
        GuardrailCheckError: the checker raised instead of deciding
    """
    try:
        return await checker.check(direction, text)
    except Exception as e:
        raise GuardrailCheckError(direction, str(e) or type(e).__name__) from e
