# concierge/entities.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, TypeAlias
from uuid import uuid4

Product: TypeAlias = Dict[str, Any]
SceneSetting: TypeAlias = str


class DirectiveAction(str, Enum):
    SHOW_PRODUCT = "SHOW_PRODUCT"
    SHOW_PRODUCTS = "SHOW_PRODUCTS"
    CHANGE_SCENE = "CHANGE_SCENE"
    WELCOME_SCENE = "WELCOME_SCENE"
    INITIATE_CHECKOUT = "INITIATE_CHECKOUT"
    CONFIRM_ORDER = "CONFIRM_ORDER"
    RESET_SCENE = "RESET_SCENE"
    IDENTIFY_CUSTOMER = "IDENTIFY_CUSTOMER"
    CAPTURE_ONLY = "CAPTURE_ONLY"

    @classmethod
    def parse(cls, value: Any) -> Optional["DirectiveAction"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class CaptureType(str, Enum):
    MEANINGFUL_EVENT = "meaningful_event"
    PROFILE_ENRICHMENT = "profile_enrichment"
    CONTACT_CREATED = "contact_created"


@dataclass(frozen=True)
class CaptureEvent:
    type: CaptureType
    label: str
    # detection layer, 1 = highest trust; not part of equality
    layer: int = field(default=1, compare=False)

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "label": self.label}


@dataclass
class DirectivePayload:
    products: Optional[List[Product]] = None
    scene_context: Optional[Dict[str, Any]] = None
    checkout_data: Optional[Dict[str, Any]] = None
    welcome_message: Optional[str] = None
    welcome_subtext: Optional[str] = None
    captures: List[CaptureEvent] = field(default_factory=list)
    customer_email: Optional[str] = None
    order_confirmation: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    suggested_actions: List[str] = field(default_factory=list)


@dataclass
class Directive:
    action: DirectiveAction
    payload: DirectivePayload = field(default_factory=DirectivePayload)

    def to_dict(self) -> Dict[str, Any]:
        p = self.payload
        out: Dict[str, Any] = {}
        if p.products is not None:
            out["products"] = p.products
        if p.scene_context is not None:
            out["sceneContext"] = p.scene_context
        if p.checkout_data is not None:
            out["checkoutData"] = p.checkout_data
        if p.welcome_message is not None:
            out["welcomeMessage"] = p.welcome_message
        if p.welcome_subtext is not None:
            out["welcomeSubtext"] = p.welcome_subtext
        if p.captures:
            out["captures"] = [c.to_dict() for c in p.captures]
        if p.customer_email is not None:
            out["customerEmail"] = p.customer_email
        if p.order_confirmation is not None:
            out["orderConfirmation"] = p.order_confirmation
        if p.message is not None:
            out["message"] = p.message
        if p.suggested_actions:
            out["suggestedActions"] = p.suggested_actions
        return {"action": self.action.value, "payload": out}


# -----------------------
# Agent I/O
# -----------------------

@dataclass
class MessageChunk:
    kind: str
    text: str

    @property
    def is_plain_text(self) -> bool:
        return (self.kind or "").strip().lower() in ("", "text")


@dataclass
class RawAgentResponse:
    """
    What an Agent Message Source hands back: one or more chunks, optional
    follow-up suggestions and optional pre-structured directive metadata.
    """
    chunks: List[MessageChunk] = field(default_factory=list)
    suggested_actions: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0

    @property
    def full_text(self) -> str:
        return "".join(c.text for c in self.chunks)

    @classmethod
    def from_text(cls, text: str, **kwargs) -> "RawAgentResponse":
        return cls(chunks=[MessageChunk(kind="Text", text=text or "")], **kwargs)

    @classmethod
    def from_api_payload(cls, data: Any) -> "RawAgentResponse":
        """
        The agent API returns messages in different shapes depending on version:
        - {"messages": [{"type": ..., "message"|"text"|"content": ...}, ...]}
        - {"responseMessages": [...]}
        - {"text": "..."} / {"response": "..."}
        """
        if not isinstance(data, dict):
            return cls.from_text(data if isinstance(data, str) else "")

        raw_messages = data.get("messages") or data.get("responseMessages") or []
        chunks: List[MessageChunk] = []
        if isinstance(raw_messages, list):
            for m in raw_messages:
                if isinstance(m, str):
                    chunks.append(MessageChunk(kind="Text", text=m))
                    continue
                if not isinstance(m, dict):
                    continue
                text = m.get("message") or m.get("text") or m.get("content") or ""
                if not isinstance(text, str):
                    text = str(text)
                chunks.append(MessageChunk(kind=str(m.get("type") or ""), text=text))

        if not chunks:
            flat = data.get("text") or data.get("response")
            if isinstance(flat, str) and flat.strip():
                chunks.append(MessageChunk(kind="Text", text=flat))

        suggested = data.get("suggestedActions") or []
        if not isinstance(suggested, list):
            suggested = []

        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

        confidence = data.get("confidence")
        if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
            confidence = 1.0

        return cls(
            chunks=chunks,
            suggested_actions=[str(s) for s in suggested if s],
            metadata=metadata,
            confidence=float(confidence),
        )


@dataclass
class AgentResponse:
    session_id: Optional[str]
    message: str
    directive: Optional[Directive] = None
    suggested_actions: List[str] = field(default_factory=list)
    confidence: float = 1.0


@dataclass
class AgentMessage:
    role: str  # "user" | "agent"
    content: str
    directive: Optional[Directive] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AgentSession:
    """
    Upstream agent handle for one logical conversation. `initialized` makes
    "initialize the upstream session exactly once" a per-conversation fact.
    """
    session_id: Optional[str] = None
    sequence: int = 0
    initialized: bool = False


# -----------------------
# Identity
# -----------------------

@dataclass
class SessionContext:
    customer_id: str
    name: str = ""
    email: str = ""
    identity_tier: str = "anonymous"   # known | appended | anonymous
    authenticated: bool = False
    skin_type: Optional[str] = None
    concerns: List[str] = field(default_factory=list)
    recent_purchases: List[str] = field(default_factory=list)
    recent_activity: List[str] = field(default_factory=list)
    appended_interests: List[str] = field(default_factory=list)
    loyalty_tier: Optional[str] = None
    loyalty_points: Optional[int] = None
    meaningful_events: List[str] = field(default_factory=list)
    browse_interests: List[str] = field(default_factory=list)
    captured_profile: List[str] = field(default_factory=list)
    missing_profile_fields: List[str] = field(default_factory=list)


# -----------------------
# Scene
# -----------------------

class SceneLayout(str, Enum):
    CONVERSATION_CENTERED = "conversation-centered"
    PRODUCT_HERO = "product-hero"
    PRODUCT_GRID = "product-grid"
    CHECKOUT = "checkout"


class ChatPosition(str, Enum):
    CENTER = "center"
    BOTTOM = "bottom"
    MINIMIZED = "minimized"


class BackgroundKind(str, Enum):
    GRADIENT = "gradient"
    IMAGE = "image"
    GENERATIVE = "generative"


@dataclass(frozen=True)
class SceneBackground:
    kind: BackgroundKind
    value: str = ""
    loading: bool = False

    @property
    def is_incomplete(self) -> bool:
        """Left mid-generation or empty; never worth reviving from a snapshot."""
        if self.kind == BackgroundKind.GENERATIVE:
            return not self.value or self.loading
        if self.kind == BackgroundKind.IMAGE:
            return not self.value
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "value": self.value, "isLoading": self.loading}


@dataclass(frozen=True)
class WelcomeData:
    message: str
    subtext: Optional[str] = None


@dataclass(frozen=True)
class SceneState:
    layout: SceneLayout
    setting: SceneSetting
    background: SceneBackground
    chat_position: ChatPosition = ChatPosition.CENTER
    products: List[Product] = field(default_factory=list)
    checkout_active: bool = False
    welcome_active: bool = False
    welcome_data: Optional[WelcomeData] = None
    transition_key: str = "initial"
    # source of fresh transition keys; only ever grows
    transition_seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layout": self.layout.value,
            "setting": self.setting,
            "background": self.background.to_dict(),
            "chatPosition": self.chat_position.value,
            "products": self.products,
            "checkoutActive": self.checkout_active,
            "welcomeActive": self.welcome_active,
            "welcomeData": (
                {"message": self.welcome_data.message, "subtext": self.welcome_data.subtext}
                if self.welcome_data else None
            ),
            "transitionKey": self.transition_key,
        }


@dataclass
class SessionSnapshot:
    messages: List[AgentMessage]
    suggested_actions: List[str]
    scene_snapshot: SceneState
    upstream_session_id: Optional[str] = None
    upstream_sequence: int = 0
    alt_agent_state: Optional[Dict[str, Any]] = None
    initialized: bool = False
