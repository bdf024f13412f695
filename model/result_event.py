from typing import List, Optional, Literal
from pydantic import BaseModel


class ResultPart(BaseModel):
    type: Literal["text", "reasoning", "tool", "other"] = "text"
    text: Optional[str] = None
    tool: Optional[str] = None
    status: Optional[str] = None
    output: Optional[str] = None


class TurnResult(BaseModel):
    message_id: str = ""
    parts: List[ResultPart] = []


class TurnPart(BaseModel):
    type: Literal["text", "file"] = "text"
    text: Optional[str] = None
    mime: Optional[str] = None
    url: Optional[str] = None
    filename: Optional[str] = None


class ModelSelector(BaseModel):
    provider_id: str
    model_id: str
    agent: Optional[str] = None

    @classmethod
    def resolve(cls, preferred: Optional[str], default_provider: str, default_model: str,
                agent: Optional[str] = None) -> "ModelSelector":
        provider_id, model_id = default_provider, default_model
        if preferred:
            provider, _, model = preferred.partition(":")
            if provider and model:
                provider_id, model_id = provider, model
            else:
                model_id = preferred
        return cls(provider_id=provider_id, model_id=model_id, agent=agent)


NO_OUTPUT = "(no output)"
TRUNCATED_SUFFIX = "\n\n... (output too long, truncated)"
TOOL_OUTPUT_LIMIT = 1000


def format_output(result: Optional[TurnResult], max_length: int) -> str:
    if result is None:
        return NO_OUTPUT

    chunks: List[str] = []
    for part in result.parts:
        if part.type == "text" and part.text:
            chunks.append(part.text)
        elif part.type == "tool" and part.status == "completed" and part.output:
            chunks.append(f"📎 [{part.tool}]\n{part.output[:TOOL_OUTPUT_LIMIT]}")

    text = "\n\n".join(chunks)
    if len(text) > max_length:
        text = text[:max_length] + TRUNCATED_SUFFIX
    return text or NO_OUTPUT
