"""
Test doubles shared across test modules.
"""

from typing import Any, Dict, List, Optional

from concierge.background_service import BackgroundOptions
from concierge.entities import AgentSession, RawAgentResponse, SessionContext


class FakeGenerator:
    """Background generator that records calls and returns a fixed result (or raises)."""

    def __init__(self, result: str = "/assets/generated/scene.png", error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, setting: str, products: List[Dict[str, Any]], options: Optional[BackgroundOptions] = None) -> str:
        self.calls.append({"setting": setting, "products": products, "options": options})
        if self.error is not None:
            raise self.error
        return self.result


class ScriptedAgent:
    """Agent source replaying canned replies; records what it was sent."""

    live = False

    def __init__(self, replies: Optional[List[Any]] = None):
        self.replies: List[Any] = list(replies or [])
        self.sent: List[str] = []
        self.init_calls = 0
        self.state: Dict[str, Any] = {"turns": 0}

    async def init_session(self, session: AgentSession, context: Optional[SessionContext]) -> None:
        self.init_calls += 1
        session.session_id = f"scripted-{self.init_calls}"
        session.sequence = 0
        session.initialized = True

    async def send(self, session: AgentSession, text: str) -> RawAgentResponse:
        self.sent.append(text)
        session.sequence += 1
        self.state["turns"] += 1
        reply = self.replies.pop(0) if self.replies else "Okay."
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, RawAgentResponse):
            return reply
        return RawAgentResponse.from_text(reply)

    def snapshot_state(self) -> Dict[str, Any]:
        return dict(self.state)

    def restore_state(self, state: Optional[Dict[str, Any]]) -> None:
        self.state = dict(state or {"turns": 0})
