# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""Pydantic models for relay records, stream events and API envelopes.

Attributes are snake_case in Python and camelCase on the wire; both spellings
are accepted on input.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ----------------- retrieval -----------------

class SearchHit(_Wire):
    """One ranked result from the search index. Never persisted."""
    id: str
    content: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    score: float = 0.0


class SourceRecord(_Wire):
    """A hit projected for display and citation."""
    id: str
    title: str
    description: str
    url: str = ""
    score: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ----------------- stored configuration -----------------

class PromptTemplate(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              extra="allow")
    id: str
    name: str
    description: str | None = None
    content: str
    is_default: bool = False


class ChatbotConfig(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              protected_namespaces=())
    search_index: str | None = None
    model_name: str | None = Field(
        None, validation_alias=AliasChoices("modelName", "openaiModel", "model_name"),
        serialization_alias="modelName")
    temperature: float | None = None
    max_results: int | None = None


class ChatbotProfile(_Wire):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              extra="allow")
    id: str
    name: str
    description: str = ""
    config: ChatbotConfig = Field(default_factory=ChatbotConfig)
    system_prompt_id: str | None = None
    is_active: bool = False
    is_public: bool = False
    rate_limit_per_hour: int | None = Field(
        None, validation_alias=AliasChoices("rateLimitPerHour", "rateLimit",
                                            "rate_limit_per_hour"),
        serialization_alias="rateLimitPerHour")


class ApiKeyRecord(_Wire):
    """Issued credential. Only the salted hash of the raw key is kept."""
    id: str
    name_prefix: str
    status: Literal["active", "inactive", "revoked"] = "active"
    rate_limit_per_hour: int = 100
    created_at: datetime
    last_used_at: datetime | None = None
    key_hash: str


# ----------------- stream events -----------------

class Usage(_Wire):
    search_results_count: int = 0
    response_tokens: int = 0
    search_latency_ms: float = 0.0


class StartEvent(_Wire):
    type: Literal["start"] = "start"
    sources: list[SourceRecord] = Field(default_factory=list)


class ContentEvent(_Wire):
    type: Literal["content"] = "content"
    text: str


class DoneEvent(_Wire):
    type: Literal["done"] = "done"
    usage: Usage = Field(default_factory=Usage)


class ErrorEvent(_Wire):
    type: Literal["error"] = "error"
    message: str
    kind: str = "internal"
    code: str = "internal_error"


StreamingEvent = Annotated[
    Union[StartEvent, ContentEvent, DoneEvent, ErrorEvent],
    Field(discriminator="type"),
]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamingEvent)

TERMINAL_TYPES = frozenset({"done", "error"})


def is_terminal(event) -> bool:
    return event.type in TERMINAL_TYPES


def encode_event(event) -> str:
    """Frame one event for a text/event-stream body."""
    return f"data: {event.model_dump_json(by_alias=True)}\n\n"


def decode_event(payload: str | bytes):
    """Parse one ``data:`` payload; raises pydantic.ValidationError if malformed."""
    return EVENT_ADAPTER.validate_json(payload)


# ----------------- API envelopes -----------------

class ChatSearchBody(_Wire):
    """Request body for both relay endpoints."""
    query: str
    prompt_id: str | None = None
    search_index: str | None = None
    max_results: int | None = Field(None, ge=1)
    model: str | None = None
    temperature: float | None = Field(None, ge=0.0, le=2.0)


class ChatSearchData(_Wire):
    query: str
    response: str
    sources: list[SourceRecord]
    search_results: list[SearchHit]
    prompt_used: str
    model: str
    timestamp: str


class ChatSearchResponse(_Wire):
    success: Literal[True] = True
    data: ChatSearchData
    usage: Usage


class ErrorResponse(_Wire):
    """API error envelope."""
    success: Literal[False] = False
    error: str
    code: str
    kind: str
