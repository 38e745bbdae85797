# concierge/agent_sources.py

import asyncio
import dataclasses
import json
import logging
import random
import re
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from uuid import uuid4

from langchain_core.messages import HumanMessage, SystemMessage

from concierge import settings
from concierge.agent_prompts import AGENT_INSTRUCTIONS, ENRICHMENT_PROBES
from concierge.base_utils import BaseUtils, ConciergeError
from concierge.entities import AgentSession, Product, RawAgentResponse, SessionContext
from concierge.history_cache import GLOBAL_HISTORY_CACHE, HistoryCache, approx_tokens
from concierge.llm_client import ChatLlmClient

logger = logging.getLogger("concierge")

WELCOME_MARKER = "[WELCOME]"


class AgentSessionError(ConciergeError):
    pass


class AgentSource(Protocol):
    """
    Where agent replies come from. `send` may raise; the conversation engine
    turns any failure into an apology.
    """

    live: bool

    async def init_session(self, session: AgentSession, context: Optional[SessionContext]) -> None:
        ...

    async def send(self, session: AgentSession, text: str) -> RawAgentResponse:
        ...

    def snapshot_state(self) -> Optional[Dict[str, Any]]:
        ...

    def restore_state(self, state: Optional[Dict[str, Any]]) -> None:
        ...


def _reply(message: str, directive: Optional[Dict[str, Any]] = None,
           suggested: Optional[List[str]] = None, confidence: float = 0.95) -> RawAgentResponse:
    """Render the way a real agent answers: prose, then the directive JSON."""
    text = message
    if directive is not None:
        text = f"{message}\n{json.dumps({'uiDirective': directive})}"
    return RawAgentResponse.from_text(text, suggested_actions=list(suggested or []), confidence=confidence)


class SimulatedAgent(BaseUtils):
    """
    Keyword-driven stand-in for the upstream agent. Uses an injected catalog
    (or the one configured by CONCIERGE_CATALOG_PATH) and keeps a little
    conversational state that the session cache snapshots per identity.
    """

    live = False

    def __init__(self, catalog: Optional[List[Product]] = None, rng: Optional[random.Random] = None,
                 probe_rate: float = 0.4):
        self.catalog: List[Product] = list(catalog) if catalog is not None else settings.load_catalog()
        self._rng = rng or random.Random()
        self.probe_rate = probe_rate
        self.context: Optional[SessionContext] = None
        self._reset_state()
        self.rules: List[Tuple[re.Pattern, Callable[[str], RawAgentResponse]]] = [
            (re.compile(r"\b(buy|purchase|checkout|add to (bag|cart)|get (it|this|both|all|them))\b", re.I), self._checkout),
            (re.compile(r"cleanser|face wash|cleanse", re.I), self._cleanser),
            (re.compile(r"moisturi[sz]er|hydrat|dry skin|sensitive", re.I), self._moisturizer),
            (re.compile(r"serum|vitamin c|brighten", re.I), self._serums),
            (re.compile(r"sunscreen|spf|sun protect|\buv\b", re.I), self._sunscreen),
            (re.compile(r"makeup|foundation|blush|mascara|lipstick", re.I), self._makeup),
            (re.compile(r"fragrance|perfume|cologne|scent", re.I), self._fragrance),
            (re.compile(r"\bhair\b|shampoo|conditioner", re.I), self._hair),
            (re.compile(r"restock|running low|refill|favou?rite", re.I), self._restock),
            (re.compile(r"travel|trip|vacation|going to", re.I), self._travel),
            (re.compile(r"ingredient|what.?s in|contain", re.I), self._ingredients),
            (re.compile(r"recommend|suggest|what should|bestseller|what.?s new", re.I), self._top_picks),
            (re.compile(r"\b(thanks?|thank you|bye|goodbye)\b", re.I), self._goodbye),
            (re.compile(r"\b(hi|hello|hey)\b|good (morning|afternoon|evening)", re.I), self._hello),
        ]

    def _reset_state(self) -> None:
        self.last_shown_product_ids: List[str] = []
        self.current_product_id: Optional[str] = None
        self.shown_categories: List[str] = []
        self.has_greeted = False

    # -----------------------
    # AgentSource
    # -----------------------

    async def init_session(self, session: AgentSession, context: Optional[SessionContext]) -> None:
        self.context = context
        self._reset_state()
        session.session_id = f"simulated-{uuid4()}"
        session.sequence = 0
        session.initialized = True

    async def send(self, session: AgentSession, text: str) -> RawAgentResponse:
        session.sequence += 1
        if text.startswith(WELCOME_MARKER):
            welcome = self._welcome()
            if welcome is not None:
                return welcome

        for pattern, handler in self.rules:
            if pattern.search(text):
                response = handler(text)
                self._maybe_probe(response)
                return response

        return _reply(
            "I'd be happy to help! I can recommend skincare, makeup, fragrances, or hair care. What interests you?",
            suggested=["Show me skincare", "Show me makeup", "Show me fragrances", "Build me a routine"],
            confidence=0.8,
        )

    def snapshot_state(self) -> Dict[str, Any]:
        return {
            "last_shown_product_ids": list(self.last_shown_product_ids),
            "current_product_id": self.current_product_id,
            "shown_categories": list(self.shown_categories),
            "has_greeted": self.has_greeted,
            "context": dataclasses.asdict(self.context) if self.context else None,
        }

    def restore_state(self, state: Optional[Dict[str, Any]]) -> None:
        if not state:
            return
        self.last_shown_product_ids = list(state.get("last_shown_product_ids") or [])
        self.current_product_id = state.get("current_product_id")
        self.shown_categories = list(state.get("shown_categories") or [])
        self.has_greeted = bool(state.get("has_greeted"))
        ctx = state.get("context")
        self.context = SessionContext(**ctx) if isinstance(ctx, dict) else None

    # -----------------------
    # Catalog helpers
    # -----------------------

    def find(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.catalog if str(p.get("id")) == str(product_id)), None)

    def by_category(self, *categories: str) -> List[Product]:
        wanted = {c.lower() for c in categories}
        return [p for p in self.catalog if str(p.get("category") or "").lower() in wanted]

    def _show(self, message: str, products: List[Product], setting: str,
              suggested: List[str], category: Optional[str] = None) -> RawAgentResponse:
        if not products:
            return _reply(
                "I don't have anything like that in stock right now. Can I show you something else?",
                suggested=["Show me skincare", "What do you recommend?"],
            )
        if category:
            self.shown_categories.append(category)
        if len(products) == 1:
            self.current_product_id = str(products[0].get("id"))
        self.last_shown_product_ids = [str(p.get("id")) for p in products]
        directive = {
            "action": "SHOW_PRODUCT" if len(products) == 1 else "SHOW_PRODUCTS",
            "payload": {
                "products": products,
                "sceneContext": {"setting": setting, "generateBackground": False},
            },
        }
        return _reply(message, directive, suggested)

    def _maybe_probe(self, response: RawAgentResponse) -> None:
        missing = self.context.missing_profile_fields if self.context else []
        candidates = [f for f in missing if f in ENRICHMENT_PROBES]
        if not candidates or len(response.suggested_actions) < 2:
            return
        if self._rng.random() < self.probe_rate:
            field = self._rng.choice(candidates)
            response.suggested_actions[-1] = self._rng.choice(ENRICHMENT_PROBES[field])

    # -----------------------
    # Handlers
    # -----------------------

    def _cleanser(self, text: str) -> RawAgentResponse:
        products = self.by_category("cleanser")[:1]
        name = products[0].get("name") if products else ""
        return self._show(
            f"I'd recommend our {name}. It removes impurities without stripping your skin.",
            products, "bathroom", ["Add to bag", "Show me something for acne", "What else do you have?"], "cleanser",
        )

    def _moisturizer(self, text: str) -> RawAgentResponse:
        products = self.by_category("moisturizer")[:1]
        name = products[0].get("name") if products else ""
        return self._show(
            f"I'd recommend our {name}. It's formulated to calm and hydrate.",
            products, "bathroom", ["Add to bag", "Tell me about the ingredients", "Show me serums instead"], "moisturizer",
        )

    def _serums(self, text: str) -> RawAgentResponse:
        return self._show(
            "We have some incredible serums, each targeting a different concern.",
            self.by_category("serum"), "lifestyle", ["Tell me about Vitamin C", "I want the retinol", "What about peptides?"], "serum",
        )

    def _sunscreen(self, text: str) -> RawAgentResponse:
        return self._show(
            "Sun protection is essential! These are lightweight enough for daily wear.",
            self.by_category("sunscreen"), "outdoor", ["Add to bag", "Show me travel products", "What about moisturizers?"], "sunscreen",
        )

    def _makeup(self, text: str) -> RawAgentResponse:
        return self._show(
            "Let me set up our makeup station! Here are our bestsellers.",
            self.by_category("foundation", "blush", "mascara", "lipstick"), "vanity",
            ["Tell me about the foundation", "Show me lipsticks", "I want a full look"], "makeup",
        )

    def _fragrance(self, text: str) -> RawAgentResponse:
        return self._show(
            "Step into our fragrance collection.",
            self.by_category("fragrance"), "bedroom", ["Tell me more", "I prefer woody scents", "Show me skincare instead"], "fragrance",
        )

    def _hair(self, text: str) -> RawAgentResponse:
        return self._show(
            "For your hair, I'd recommend our repair duo.",
            self.by_category("shampoo", "conditioner", "haircare"), "bathroom", ["Get both", "Just the shampoo", "Show me skincare instead"], "haircare",
        )

    def _travel(self, text: str) -> RawAgentResponse:
        products = [
            p for p in self.catalog
            if (p.get("attributes") or {}).get("isTravel") or str(p.get("category") or "").lower() == "travel"
        ]
        return self._show(
            "I've noted your upcoming trip! Here are our travel essentials, all compact and carry-on friendly.",
            products, "travel", ["Get the travel kit", "Just the sunscreen", "What about a cleanser?"], "travel",
        )

    def _restock(self, text: str) -> RawAgentResponse:
        purchases = self.context.recent_purchases if self.context else []
        products = [p for p in (self.find(pid) for pid in dict.fromkeys(purchases)) if p]
        if products:
            name = self.context.name if self.context else ""
            return self._show(
                f"Here are your recent purchases, {name}. Shall I add any to your bag for a quick restock?",
                products, "bathroom", ["Reorder all", "Just the SPF", "Show me something new instead"],
            )
        return _reply(
            "I'd love to help you restock! What products are you running low on?",
            suggested=["Moisturizer", "Cleanser", "SPF", "Show me everything"],
        )

    def _top_picks(self, text: str) -> RawAgentResponse:
        picks: List[Product] = []
        for category in ("moisturizer", "serum", "foundation", "fragrance"):
            picks.extend(self.by_category(category)[:1])
        return self._show(
            "Here are my top picks across categories.",
            picks, "lifestyle", ["Show me skincare", "Show me makeup", "Show me fragrances"],
        )

    def _checkout(self, text: str) -> RawAgentResponse:
        ids = [self.current_product_id] if self.current_product_id else self.last_shown_product_ids
        products = [p for p in (self.find(i) for i in ids if i) if p]
        directive = {
            "action": "INITIATE_CHECKOUT",
            "payload": {"checkoutData": {"products": products, "useStoredPayment": True}},
        }
        return _reply("Perfect choice! I'll set that up for you.", directive, [])

    def _ingredients(self, text: str) -> RawAgentResponse:
        product = self.find(self.current_product_id) if self.current_product_id else None
        ingredients = ((product or {}).get("attributes") or {}).get("ingredients")
        if product and ingredients:
            return _reply(
                f"The {product.get('name')} contains: {', '.join(ingredients)}.",
                suggested=["Add to bag", "Show me something else", "Any alternatives?"],
            )
        return _reply(
            "I'd be happy to tell you about ingredients! Which product are you curious about?",
            suggested=["Moisturizer ingredients", "Serum ingredients", "Cleanser ingredients"],
        )

    def _goodbye(self, text: str) -> RawAgentResponse:
        return _reply(
            "You're welcome! It was lovely helping you today. Enjoy your new products!",
            {"action": "RESET_SCENE", "payload": {}},
            [],
        )

    def _hello(self, text: str) -> RawAgentResponse:
        welcome = self._welcome()
        if welcome is not None:
            return welcome
        return _reply(
            "Hello! Welcome to your personal beauty concierge. What are you looking for today?",
            suggested=["Show me moisturizers", "Show me makeup", "Show me fragrances", "Build me a routine"],
        )

    def _welcome(self) -> Optional[RawAgentResponse]:
        if self.has_greeted:
            return None
        self.has_greeted = True
        ctx = self.context
        tier = ctx.identity_tier if ctx else "anonymous"

        if ctx is not None and tier == "known":
            has_trip = any("trip" in e.lower() or "travel" in e.lower() for e in ctx.meaningful_events)
            has_anniversary = any("anniversary" in e.lower() for e in ctx.meaningful_events)
            loyalty = f"{ctx.loyalty_tier} member" if ctx.loyalty_tier else None
            if has_trip:
                subtext, setting, prompt = (
                    "Your travel SPF is probably running low after that trip. Let me help you restock.",
                    "lifestyle",
                    "Warm golden hour luxury lifestyle setting, welcoming atmosphere, travel memories",
                )
            elif has_anniversary:
                subtext, setting, prompt = (
                    "Shopping for something special? I can help you find the perfect gift.",
                    "bedroom",
                    "Elegant intimate bedroom setting, soft evening light, romantic gift-giving mood",
                )
            else:
                subtext = (
                    f"As a {loyalty}, you have early access to our new arrivals."
                    if loyalty else "Let me help you discover something perfect today."
                )
                setting, prompt = "lifestyle", "Elegant luxury beauty lifestyle setting, soft golden light"
            directive = {
                "action": "WELCOME_SCENE",
                "payload": {
                    "welcomeMessage": f"Welcome back, {ctx.name}!",
                    "welcomeSubtext": subtext,
                    "sceneContext": {"setting": setting, "generateBackground": True, "backgroundPrompt": prompt},
                },
            }
            return _reply(
                f"Welcome back, {ctx.name}! {subtext}",
                directive,
                ["Show me what's new", "Restock my favorites", "Build me a routine"],
                confidence=0.96,
            )

        if ctx is not None and tier == "appended":
            interests = [i.lower() for i in ctx.appended_interests]
            clean = any("clean" in i for i in interests)
            wellness = any("wellness" in i or "yoga" in i for i in interests)
            suggested = [
                "Show me clean beauty brands" if clean else "Show me skincare",
                "Help me build a routine" if wellness else "What do you recommend?",
                "Show me bestsellers",
            ]
            message, subtext = (
                "Welcome! I'm here to help you discover something you'll love.",
                "Your personal beauty concierge. Let's find your perfect match.",
            )
        else:
            suggested = ["Show me moisturizers", "I need travel products", "What do you recommend?"]
            message, subtext = (
                "Welcome to your personal beauty concierge! What can I help you discover today?",
                "Your personal beauty concierge is ready to help you discover something perfect.",
            )

        directive = {
            "action": "WELCOME_SCENE",
            "payload": {
                "welcomeMessage": "Welcome!",
                "welcomeSubtext": subtext,
                "sceneContext": {"setting": "neutral", "generateBackground": False},
            },
        }
        return _reply(message, directive, suggested, confidence=0.9)


class LlmAgent(BaseUtils):
    """
    Agent source backed by a chat LLM (OpenAI or Vertex, see llm_client).

    The transcript lives in the HistoryCache under the upstream session id, so
    restoring a cached session id resumes the conversation without a call.
    """

    live = True

    def __init__(self, chat_llm: Optional[ChatLlmClient] = None, history: Optional[HistoryCache] = None,
                 instructions: str = AGENT_INSTRUCTIONS, retries: int = 3):
        self._chat_llm = chat_llm
        self.history = history or GLOBAL_HISTORY_CACHE
        self.instructions = instructions
        self.retries = retries
        self._session_context: Dict[str, str] = {}

    @property
    def chat_llm(self) -> ChatLlmClient:
        if self._chat_llm is None:
            self._chat_llm = ChatLlmClient(
                settings.AGENT_MODEL,
                vertex_project=settings.PROJECT_ID,
                vertex_region=settings.REGION,
                timeout=settings.AGENT_TIMEOUT,
            )
        return self._chat_llm

    async def init_session(self, session: AgentSession, context: Optional[SessionContext]) -> None:
        session.session_id = str(uuid4())
        session.sequence = 0
        session.initialized = True
        self._session_context[session.session_id] = self._render_context(context)
        logger.info(f"[agent] Started upstream session {session.session_id}")

    async def send(self, session: AgentSession, text: str) -> RawAgentResponse:
        if not session.initialized or not session.session_id:
            raise AgentSessionError("send() on an agent session that was never initialized")

        system = self.instructions + self._session_context.get(session.session_id, "")
        messages = [SystemMessage(content=system)]
        messages.extend(self.history.snapshot(session.session_id, reserve_tokens=approx_tokens(system)))
        messages.append(HumanMessage(content=text))

        reply = await asyncio.to_thread(self.chat_llm.invoke, messages, retries=self.retries)

        self.history.append_turn(session.session_id, text, reply)
        session.sequence += 1
        return RawAgentResponse.from_text(reply)

    def snapshot_state(self) -> None:
        # live upstream: the session id + sequence are the whole state
        return None

    def restore_state(self, state: Optional[Dict[str, Any]]) -> None:
        return None

    def _render_context(self, context: Optional[SessionContext]) -> str:
        if context is None:
            return ""
        fields = {k: v for k, v in dataclasses.asdict(context).items() if v not in (None, "", [], False)}
        return "\n\n[SESSION CONTEXT]\n" + json.dumps(fields, indent=2)
