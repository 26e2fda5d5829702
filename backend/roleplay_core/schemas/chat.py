from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, List, Optional

from pydantic import ConfigDict, Field, model_validator

from roleplay_core.schemas.common import APIModel
from roleplay_core.utils.time_utils import utc_now_iso


def new_id() -> str:
    """Create a new collision-free identifier."""

    return uuid.uuid4().hex


class MessageSender(str, Enum):
    USER = "user"
    CHARACTER = "character"
    SYSTEM = "system"


class MessageState(str, Enum):
    """Lifecycle of a message; only pending messages are ever replaced."""

    PENDING = "pending"
    FINAL = "final"
    FAILED = "failed"


class Message(APIModel):
    """One chat entry. Frozen: pipelines replace messages by id instead of editing them."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str = Field(default_factory=new_id)
    sender: MessageSender
    character_id: Optional[str] = None
    text: Optional[str] = None
    image_url: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)
    state: MessageState = MessageState.FINAL

    @property
    def is_loading(self) -> bool:
        return self.state is MessageState.PENDING and self.sender is not MessageSender.SYSTEM

    @property
    def is_image_loading(self) -> bool:
        return self.state is MessageState.PENDING and self.sender is MessageSender.SYSTEM

    @property
    def is_raw(self) -> bool:
        """True for finalized conversation text, the unit memory compression counts."""

        return self.state is MessageState.FINAL and bool((self.text or "").strip())


class ChatParameters(APIModel):
    """Sampling knobs passed through to the text generator."""

    temperature: float = Field(default=0.9, ge=0.0, le=2.0)
    top_k: int = Field(default=40, ge=0, le=200)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    max_tokens: int = Field(default=1200, ge=1, le=8192)
    context_size: int = Field(default=4096, ge=256, le=131072)
    repetition_penalty: float = Field(default=1.1, ge=0.5, le=2.0)


class ImageParameters(APIModel):
    """Image synthesis knobs passed through to the image endpoint."""

    negative_prompt: str = "bad anatomy, blurry, low quality, distorted face, extra limbs"
    ip_scale: float = Field(default=0.6, ge=0.0, le=1.0)
    guidance_scale: float = Field(default=5.0, ge=0.0, le=30.0)
    steps: int = Field(default=30, ge=1, le=150)
    seed: int = Field(default=42, ge=0)
    randomize_seed: bool = True
    use_llm: bool = True
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    use_embedding: bool = True


class MemoryStore(APIModel):
    """Tiered conversation memory owned by a scenario.

    ``tiers[0]`` holds base memories (one per window of raw messages),
    ``tiers[1]`` core memories, and so on. ``main_memory`` is the permanent
    record fed by the last tier.
    """

    raw_counter: int = Field(default=0, ge=0)
    compressed_through: int = Field(default=0, ge=0)
    tiers: List[List[str]] = Field(default_factory=lambda: [[], []])
    main_memory: str = ""

    @property
    def tier1(self) -> List[str]:
        return self.tier(0)

    @property
    def tier2(self) -> List[str]:
        return self.tier(1)

    def tier(self, index: int) -> List[str]:
        self.ensure_tiers(index + 1)
        return self.tiers[index]

    def ensure_tiers(self, count: int) -> None:
        while len(self.tiers) < count:
            self.tiers.append([])

    def pending_windows(self, window_size: int) -> int:
        return max(0, self.raw_counter - self.compressed_through) // window_size

    def is_empty(self) -> bool:
        return not self.main_memory.strip() and not any(self.tiers)


class Character(APIModel):
    """A roleplay participant."""

    id: str = Field(default_factory=lambda: f"char_{new_id()}")
    name: str = Field(min_length=1, max_length=120)
    avatar: str = ""
    persona: str = ""
    system_instruction: str = ""
    pre_history: str = ""
    post_history: str = ""
    visual_description: str = ""


class Scenario(APIModel):
    """A conversation setting with its participants, parameters, and memory."""

    id: str = Field(default_factory=lambda: f"scen_{new_id()}")
    name: str = Field(min_length=1, max_length=200)
    description: str = ""
    character_ids: List[str] = Field(default_factory=list)
    chat_parameters: ChatParameters = Field(default_factory=ChatParameters)
    image_parameters: ImageParameters = Field(default_factory=ImageParameters)
    system_instruction: str = ""
    language: str = "English"
    user_persona: str = ""
    memory: MemoryStore = Field(default_factory=MemoryStore)
    chat_endpoint_url: Optional[str] = None
    image_endpoint_url: Optional[str] = None
    model_id: Optional[str] = None
    tunnel_password: Optional[str] = None
    background_image_url: Optional[str] = None
    background_opacity: Optional[int] = Field(default=None, ge=0, le=100)
    background_blur: Optional[int] = Field(default=None, ge=0, le=100)

    @model_validator(mode="before")
    @classmethod
    def _upgrade_legacy_memory(cls, data: Any) -> Any:
        """Accept the flat memory fields written by older clients."""

        if not isinstance(data, dict):
            return data
        legacy = data.get("memory")
        if legacy is not None and not isinstance(legacy, str):
            return data
        upgraded = dict(data)
        base = upgraded.pop("base_memories", None) or upgraded.pop("intermediate_memories", None)
        core = upgraded.pop("core_memories", None)
        upgraded.pop("intermediate_memories", None)
        if legacy is None and base is None and core is None:
            return upgraded
        upgraded["memory"] = {
            "main_memory": legacy or "",
            "tiers": [list(base or []), list(core or [])],
        }
        return upgraded


class MessageListResponse(APIModel):
    messages: List[Message]
    turn_state: str = "idle"
    image_state: str = "idle"


class SendMessageRequest(APIModel):
    text: str = Field(max_length=8000)


class SendMessageResponse(APIModel):
    accepted: bool


class ImageTriggerResponse(APIModel):
    started: bool


class ConnectionCheckRequest(APIModel):
    url: str


class ConnectionCheckResponse(APIModel):
    ok: bool


class MemorySnapshotResponse(APIModel):
    memory: MemoryStore
    compression_state: str
    window_size: int
    tier_bounds: List[int]


class DeleteResponse(APIModel):
    deleted: bool
