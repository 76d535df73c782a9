"""Text generation: transport, prompts and output parsing."""

from tastegraph.llm.client import LLMGenerationClient
from tastegraph.llm.llm_adapter import (
    GenerationTransportError,
    LLMDisabledError,
    generate_text,
)
from tastegraph.llm.parser import (
    ResponseParseError,
    parse_array,
    parse_object,
    parse_structured,
)

__all__ = [
    "LLMGenerationClient",
    "GenerationTransportError",
    "LLMDisabledError",
    "generate_text",
    "ResponseParseError",
    "parse_array",
    "parse_object",
    "parse_structured",
]
