"""Wire schemas for the BidiGenerateContent WebSocket protocol."""

from __future__ import annotations

import json
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .types import GenerationConfig, SessionConfig

PING_FRAME = json.dumps({"type": "ping"})


def model_resource(model: str) -> str:
    """Normalize 'gemini-x' and 'models/gemini-x' to 'models/gemini-x'."""
    return model if model.startswith("models/") else f"models/{model}"


# --- Outbound -------------------------------------------------------------


class SetupGenerationConfig(GenerationConfig):
    response_modalities: List[str] = Field(default_factory=lambda: ["TEXT"])


class Setup(BaseModel):
    model: str
    generation_config: SetupGenerationConfig
    system_instruction: Optional[str] = None


class SetupMessage(BaseModel):
    """First frame of every connection."""
    model_config = ConfigDict(populate_by_name=True)

    setup: Setup = Field(alias="BidiGenerateContentSetup")

    @classmethod
    def from_session(cls, config: SessionConfig) -> "SetupMessage":
        generation = config.generation_config or GenerationConfig()
        return cls(setup=Setup(
            model=model_resource(config.model),
            generation_config=SetupGenerationConfig(**generation.model_dump()),
            system_instruction=config.system_instruction,
        ))


class AudioPart(BaseModel):
    role: str = "user"
    mime_type: str = "audio/raw"


class Turn(BaseModel):
    parts: List[AudioPart]


class ClientContent(BaseModel):
    turns: List[Turn]


class RealtimeInput(BaseModel):
    media_chunks: List[List[int]]
    client_content: ClientContent


class RealtimeInputMessage(BaseModel):
    """One chunk of raw 16-bit PCM audio."""
    model_config = ConfigDict(populate_by_name=True)

    realtime_input: RealtimeInput = Field(alias="BidiGenerateContentRealtimeInput")

    @classmethod
    def from_pcm(cls, pcm: bytes, role: str = "user") -> "RealtimeInputMessage":
        return cls(realtime_input=RealtimeInput(
            media_chunks=[list(pcm)],
            client_content=ClientContent(turns=[Turn(parts=[AudioPart(role=role)])]),
        ))


def encode_frame(payload: Union[BaseModel, Mapping[str, Any], str]) -> str:
    """Serialize an outbound payload to the JSON text sent on the wire."""
    if isinstance(payload, BaseModel):
        return payload.model_dump_json(by_alias=True, exclude_none=True)
    if isinstance(payload, str):
        return payload
    return json.dumps(payload)


# --- Inbound --------------------------------------------------------------


class TextPart(BaseModel):
    text: Optional[str] = None


class ModelTurn(BaseModel):
    parts: List[TextPart] = Field(default_factory=list)


class ServerContent(BaseModel):
    model_turn: Optional[ModelTurn] = None
    interrupted: bool = False

    def text(self) -> str:
        if self.model_turn is None:
            return ""
        return "".join(part.text or "" for part in self.model_turn.parts)


class ResponseError(BaseModel):
    message: str = ""
    code: Optional[int] = None


class ServerFrame(BaseModel):
    """Any frame received from the service; unknown envelopes are ignored."""
    model_config = ConfigDict(populate_by_name=True)

    server_content: Optional[ServerContent] = Field(default=None, alias="BidiGenerateContentServerContent")
    response: Optional[ResponseError] = Field(default=None, alias="BidiGenerateContentResponse")
