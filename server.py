import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from concierge.base_utils import ConciergeError
from concierge.conversation import ConversationEngine
from concierge.entities import SessionContext

logger = logging.getLogger("concierge")

app = FastAPI()

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins for dev
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class MessageIn(BaseModel):
    text: str


class IdentityIn(BaseModel):
    identity_id: str
    name: str = ""
    email: str = ""
    identity_tier: str = "anonymous"
    authenticated: bool = False
    skin_type: Optional[str] = None
    concerns: List[str] = []
    recent_purchases: List[str] = []
    recent_activity: List[str] = []
    appended_interests: List[str] = []
    loyalty_tier: Optional[str] = None
    loyalty_points: Optional[int] = None
    meaningful_events: List[str] = []
    browse_interests: List[str] = []
    captured_profile: List[str] = []
    missing_profile_fields: List[str] = []

    def to_context(self) -> SessionContext:
        data = self.model_dump()
        identity_id = data.pop("identity_id")
        return SessionContext(customer_id=data.get("email") or identity_id, **data)


_engine: Optional[ConversationEngine] = None


async def _identify_by_email(email: str) -> bool:
    """Anonymous shopper shared an email: upgrade the live context in place."""
    engine = get_engine()
    if engine.context is None:
        engine.context = SessionContext(customer_id=email, email=email, identity_tier="known")
    else:
        engine.context.email = email
        engine.context.customer_id = email
    return True


def get_engine() -> ConversationEngine:
    global _engine
    if _engine is None:
        _engine = ConversationEngine(identify_hook=_identify_by_email)
    return _engine


@app.get("/state")
async def get_state() -> Dict[str, Any]:
    return get_engine().to_dict()


@app.post("/messages")
async def send_message(message: MessageIn):
    if not message.text.strip():
        raise HTTPException(status_code=400, detail="Message text is empty")
    engine = get_engine()
    try:
        await engine.send_message(message.text)
    except ConciergeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return engine.to_dict()


@app.post("/identity")
async def select_identity(identity: IdentityIn):
    engine = get_engine()
    context = identity.to_context()

    async def resolver(_: str) -> Optional[SessionContext]:
        return None if context.identity_tier == "anonymous" else context

    await engine.resolve_identity(identity.identity_id, resolver)
    return engine.to_dict()


@app.post("/identity/{identity_id}/reset")
async def reset_identity(identity_id: str):
    engine = get_engine()
    await engine.reset_identity(identity_id)
    return engine.to_dict()


@app.post("/conversation/clear")
async def clear_conversation():
    engine = get_engine()
    engine.clear_conversation()
    return engine.to_dict()


@app.post("/scene/welcome/dismiss")
async def dismiss_welcome():
    engine = get_engine()
    engine.dismiss_welcome()
    return engine.to_dict()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
