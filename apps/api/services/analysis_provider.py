"""
Text-generation provider used by the analysis stages, plus per-stage cost metering.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

from openai import OpenAI, OpenAIError

from analysis.models import CostDelta, TokenUsage
from services.audit_errors import ProviderError, call_with_timeout

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Generation:
    text: str
    usage: TokenUsage


class AnalysisProvider(Protocol):
    async def generate(self, prompt: str, system_prompt: str, max_tokens: int = 2000) -> Generation: ...


class OpenAIAnalysisProvider:
    """AnalysisProvider on the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        input_cost_per_mtok: float = 2.5,
        output_cost_per_mtok: float = 10.0,
        temperature: float = 0.4,
    ):
        if not api_key:
            raise ValueError("api_key must be provided")
        self.client = OpenAI(api_key=api_key)
        self.model = model
        self.input_cost_per_mtok = input_cost_per_mtok
        self.output_cost_per_mtok = output_cost_per_mtok
        self.temperature = temperature

    def price(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_cost_per_mtok + output_tokens * self.output_cost_per_mtok
        ) / 1_000_000

    def _complete(self, prompt: str, system_prompt: str, max_tokens: int) -> Generation:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as exc:
            raise ProviderError(f"OpenAI request failed: {exc}") from exc

        text = response.choices[0].message.content or "" if response.choices else ""
        input_tokens = getattr(response.usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(response.usage, "completion_tokens", 0) or 0
        return Generation(
            text=text,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=self.price(input_tokens, output_tokens),
            ),
        )

    async def generate(self, prompt: str, system_prompt: str, max_tokens: int = 2000) -> Generation:
        return await asyncio.to_thread(self._complete, prompt, system_prompt, max_tokens)


class CostMeter:
    """
    Wraps a provider for one stage and records the usage of every call that returns.

    The orchestrator reads ``delta()`` after the stage finishes or fails, so
    calls that completed before a later failure are still charged.
    """

    def __init__(self, provider: AnalysisProvider, timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout
        self.calls: List[TokenUsage] = []

    async def generate(self, prompt: str, system_prompt: str, max_tokens: int = 2000) -> Generation:
        generation = await call_with_timeout(
            self.provider.generate(prompt, system_prompt, max_tokens),
            self.timeout,
            "analysis provider call",
        )
        self.calls.append(generation.usage)
        return generation

    def delta(self) -> CostDelta:
        return CostDelta(
            tokens=sum(u.total_tokens for u in self.calls),
            cost=sum(u.cost for u in self.calls),
        )
