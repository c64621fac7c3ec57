"""Core types and DTOs for the inference gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Backend(str, Enum):
    """Interchangeable generation backends."""

    FLASH = "flash"  # fast / cheap
    LITE = "lite"  # balanced
    PRO = "pro"  # highest quality


class PricingTier(str, Enum):
    """Per-million-token rate buckets."""

    PRO = "pro"
    FLASH = "flash"
    LITE = "lite"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    OFFLINE = "offline"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """One upstream provider key as handed out by the key pool.

    ``id`` is None for the statically configured fallback credential, which
    is never demoted or persisted.
    """

    id: int | None
    backend: Backend
    secret: str

    @property
    def is_fallback(self) -> bool:
        return self.id is None

    @property
    def label(self) -> str:
        return f"{self.backend.value}:{self.id if self.id is not None else 'fallback'}"


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


@dataclass
class ChatTurn:
    role: str  # system | user | assistant
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class NormalizedPrompt:
    """A chat request reduced to text: system prompt, history, active user turn, media refs."""

    system_prompt: str = ""
    history: list[ChatTurn] = field(default_factory=list)
    user_message: str = ""
    image_refs: list[str] = field(default_factory=list)
    audio_refs: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackendRoute:
    backend: Backend
    public_model_name: str
    pricing_tier: PricingTier


@dataclass(frozen=True)
class BackendConfig:
    """Connection settings for one generation backend."""

    backend: Backend
    base_url: str
    model: str
    timeout_seconds: float = 60.0


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass
class GenerationResult:
    """A buffered completion. ``total_tokens`` is 0 when the backend reports no usage."""

    text: str
    total_tokens: int = 0
