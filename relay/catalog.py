# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Prompt templates, chatbot profiles and the session's active pointers, as
stored in the key-value store.

The relay never reads the store itself: callers load a SessionState and a
CatalogSnapshot at the request boundary and pass them in.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, List, Type, TypeVar
from pydantic import BaseModel, ValidationError as PydanticValidationError
from relay.errors import ValidationError
from relay.log import get_logger
from relay.schemas import ChatbotProfile, PromptTemplate
from relay.stores.base import BaseKVStore

log = get_logger("catalog")

PROMPTS_KEY = "system-prompts"
PROFILES_KEY = "chatbot-profiles"
ACTIVE_PROMPT_KEY = "active-prompt-id"
ACTIVE_CHATBOT_KEY = "active-chatbot-id"

M = TypeVar("M", bound=BaseModel)


@dataclass
class SessionState:
    active_chatbot_id: str | None = None
    active_prompt_id: str | None = None


@dataclass
class CatalogSnapshot:
    prompts: List[PromptTemplate] = field(default_factory=list)
    profiles: List[ChatbotProfile] = field(default_factory=list)

    def prompt(self, prompt_id: str) -> PromptTemplate | None:
        return next((p for p in self.prompts if p.id == prompt_id), None)

    def profile(self, chatbot_id: str) -> ChatbotProfile | None:
        return next((c for c in self.profiles if c.id == chatbot_id), None)


def _as_id(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_list(raw: Any, model: Type[M], key: str) -> List[M]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        log.warning(f"kv {key!r} is not a list ({type(raw).__name__}); ignoring")
        return []
    out: List[M] = []
    for i, item in enumerate(raw):
        try:
            out.append(model.model_validate(item))
        except PydanticValidationError as e:
            log.warning(f"kv {key!r}[{i}] skipped: {e.error_count()} validation error(s)")
    return out


class Catalog:
    def __init__(self, kv: BaseKVStore):
        self.kv = kv

    # ---------------- session pointers ----------------

    async def load_session(self) -> SessionState:
        return SessionState(
            active_chatbot_id=_as_id(await self.kv.get(ACTIVE_CHATBOT_KEY)),
            active_prompt_id=_as_id(await self.kv.get(ACTIVE_PROMPT_KEY)),
        )

    async def save_session(self, state: SessionState) -> None:
        if state.active_chatbot_id:
            await self.kv.set(ACTIVE_CHATBOT_KEY, state.active_chatbot_id)
        if state.active_prompt_id:
            await self.kv.set(ACTIVE_PROMPT_KEY, state.active_prompt_id)

    # ---------------- collections ----------------

    async def prompts(self) -> List[PromptTemplate]:
        return _parse_list(await self.kv.get(PROMPTS_KEY), PromptTemplate, PROMPTS_KEY)

    async def profiles(self) -> List[ChatbotProfile]:
        return _parse_list(await self.kv.get(PROFILES_KEY), ChatbotProfile, PROFILES_KEY)

    async def snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(prompts=await self.prompts(), profiles=await self.profiles())

    async def _save(self, key: str, items: List[BaseModel]) -> None:
        await self.kv.set(key, [i.wire() for i in items])

    async def add_prompt(self, prompt: PromptTemplate) -> PromptTemplate:
        prompts = await self.prompts()
        if any(p.id == prompt.id for p in prompts):
            raise ValidationError(f"prompt template {prompt.id!r} already exists")
        first = not prompts
        if first:
            prompt = prompt.model_copy(update={"is_default": True})
        await self._save(PROMPTS_KEY, prompts + [prompt])
        if first:
            await self.kv.set(ACTIVE_PROMPT_KEY, prompt.id)
        return prompt

    async def delete_prompt(self, prompt_id: str) -> str | None:
        """Returns the id the active pointer was moved to, if it moved."""
        prompts = await self.prompts()
        victim = next((p for p in prompts if p.id == prompt_id), None)
        if victim is None:
            raise ValidationError(f"prompt template {prompt_id!r} not found")
        if len(prompts) == 1:
            raise ValidationError("cannot delete the last prompt template")
        remaining = [p for p in prompts if p.id != prompt_id]
        if victim.is_default and not any(p.is_default for p in remaining):
            remaining[0] = remaining[0].model_copy(update={"is_default": True})
        await self._save(PROMPTS_KEY, remaining)
        if _as_id(await self.kv.get(ACTIVE_PROMPT_KEY)) == prompt_id:
            await self.kv.set(ACTIVE_PROMPT_KEY, remaining[0].id)
            return remaining[0].id
        return None

    async def select_prompt(self, prompt_id: str) -> None:
        if not any(p.id == prompt_id for p in await self.prompts()):
            raise ValidationError(f"prompt template {prompt_id!r} not found")
        await self.kv.set(ACTIVE_PROMPT_KEY, prompt_id)

    async def add_profile(self, profile: ChatbotProfile) -> ChatbotProfile:
        profiles = await self.profiles()
        if any(c.id == profile.id for c in profiles):
            raise ValidationError(f"chatbot profile {profile.id!r} already exists")
        first = not profiles
        if first:
            profile = profile.model_copy(update={"is_active": True})
        await self._save(PROFILES_KEY, profiles + [profile])
        if first:
            await self.kv.set(ACTIVE_CHATBOT_KEY, profile.id)
        return profile

    async def delete_profile(self, chatbot_id: str) -> str | None:
        """Returns the id the active pointer was moved to, if it moved."""
        profiles = await self.profiles()
        if not any(c.id == chatbot_id for c in profiles):
            raise ValidationError(f"chatbot profile {chatbot_id!r} not found")
        if len(profiles) == 1:
            raise ValidationError("cannot delete the last chatbot profile")
        remaining = [c for c in profiles if c.id != chatbot_id]
        await self._save(PROFILES_KEY, remaining)
        if _as_id(await self.kv.get(ACTIVE_CHATBOT_KEY)) == chatbot_id:
            await self.kv.set(ACTIVE_CHATBOT_KEY, remaining[0].id)
            return remaining[0].id
        return None

    async def select_profile(self, chatbot_id: str) -> None:
        if not any(c.id == chatbot_id for c in await self.profiles()):
            raise ValidationError(f"chatbot profile {chatbot_id!r} not found")
        await self.kv.set(ACTIVE_CHATBOT_KEY, chatbot_id)


async def load_request_context(catalog: Catalog | None) -> tuple[SessionState, CatalogSnapshot]:
    """Boundary read used by the HTTP layer; an absent store means defaults."""
    if catalog is None:
        return SessionState(), CatalogSnapshot()
    return await catalog.load_session(), await catalog.snapshot()
