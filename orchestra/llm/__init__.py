"""Model transport, prompt rendering and auxiliary model calls."""

from orchestra.llm.prompts import JinjaPromptRenderer, PromptRenderer
from orchestra.llm.transport import AnthropicTransport, ModelRequest, ModelResponse, ModelTransport

__all__ = [
    "AnthropicTransport",
    "JinjaPromptRenderer",
    "ModelRequest",
    "ModelResponse",
    "ModelTransport",
    "PromptRenderer",
]
