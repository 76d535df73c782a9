"""Provider-agnostic generation client used by the core."""

from typing import Sequence

import httpx

from tastegraph.core.contracts import PromptPart
from tastegraph.llm.llm_adapter import generate_text


class LLMGenerationClient:
    """``GenerationClient`` backed by the configured HTTP transport."""

    def __init__(
        self,
        temperature: float = 0.7,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.temperature = temperature
        self.transport = transport

    async def generate(
        self,
        prompt_parts: Sequence[PromptPart | str],
        system_instruction: str,
        max_output_size: int,
    ) -> str:
        return await generate_text(
            system_prompt=system_instruction,
            prompt_parts=prompt_parts,
            max_tokens=max_output_size,
            temperature=self.temperature,
            transport=self.transport,
        )
