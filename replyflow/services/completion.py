"""
Text-completion provider used for scenario selection and reply generation.

Scenario matching is free-text: the provider reads each scenario's
detection criteria and picks one (or none). Nothing here pattern-matches
locally, so tests swap in a fake provider.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional

from replyflow.services.profile import Scenario

logger = logging.getLogger(__name__)

_CLASSIFIER_SYSTEM = (
    "You route incoming customer messages to scenarios. "
    "Reply with only the number of the single best matching scenario, "
    "or 0 if none of them clearly applies."
)


def normalize_turns(messages: List[dict]) -> List[dict]:
    """Make history acceptable to chat APIs.

    Drops leading assistant turns and merges consecutive turns of the same
    role, keeping their order.
    """
    turns: List[dict] = []
    for msg in messages:
        content = (msg.get("content") or "").strip()
        if not content:
            continue
        role = msg.get("role")
        if not turns and role != "user":
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1] = {"role": role, "content": f"{turns[-1]['content']}\n{content}"}
        else:
            turns.append({"role": role, "content": content})
    return turns


def build_classifier_prompt(message: str, scenarios: List[Scenario]) -> str:
    lines = ["Scenarios:"]
    for i, scenario in enumerate(scenarios, start=1):
        lines.append(f"{i}. {scenario.label}: {scenario.detection_criteria}")
    lines.append("")
    lines.append(f"Customer message:\n{message}")
    return "\n".join(lines)


def parse_scenario_choice(text: str, scenarios: List[Scenario]) -> Optional[Scenario]:
    """Map the classifier's answer back to a scenario (None for 0 / garbage)."""
    match = re.search(r"\d+", text or "")
    if not match:
        return None
    index = int(match.group())
    if 1 <= index <= len(scenarios):
        return scenarios[index - 1]
    return None


class CompletionProvider(ABC):
    """Contract for the external text-completion provider."""

    @abstractmethod
    async def select_scenario(
        self, message: str, scenarios: List[Scenario]
    ) -> Optional[Scenario]:
        """Pick the scenario whose detection criteria fit ``message``, if any."""
        ...

    @abstractmethod
    async def generate(
        self, system_prompt: str, messages: List[dict], max_tokens: int
    ) -> str:
        """Produce a reply for the conversation ``messages``."""
        ...


class AnthropicCompletionProvider(CompletionProvider):
    """CompletionProvider backed by the Anthropic Messages API."""

    def __init__(self, api_key: str, model: str, client=None):
        if client is None:
            import anthropic
            client = anthropic.AsyncAnthropic(api_key=api_key)
        self._client = client
        self._model = model

    async def _complete(self, system: str, messages: List[dict], max_tokens: int) -> str:
        response = await self._client.messages.create(
            model=self._model,
            max_tokens=max_tokens,
            system=system,
            messages=messages,
        )
        return "\n".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )

    async def select_scenario(
        self, message: str, scenarios: List[Scenario]
    ) -> Optional[Scenario]:
        if not scenarios or not message.strip():
            return None
        answer = await self._complete(
            _CLASSIFIER_SYSTEM,
            [{"role": "user", "content": build_classifier_prompt(message, scenarios)}],
            max_tokens=8,
        )
        scenario = parse_scenario_choice(answer, scenarios)
        logger.debug(f"Scenario classifier answered {answer!r} -> {scenario.label if scenario else None}")
        return scenario

    async def generate(
        self, system_prompt: str, messages: List[dict], max_tokens: int
    ) -> str:
        turns = normalize_turns(messages)
        if not turns:
            return ""
        return await self._complete(system_prompt, turns, max_tokens)
