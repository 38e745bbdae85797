# concierge/conversation.py

import dataclasses
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional

from concierge import settings
from concierge.agent_prompts import build_welcome_message
from concierge.agent_response import ResponseAssembler
from concierge.agent_sources import AgentSource, LlmAgent, SimulatedAgent
from concierge.background_service import DEFAULT_IMAGE
from concierge.base_utils import BaseUtils
from concierge.capture_extractor import CaptureExtractor
from concierge.directive_parser import DirectiveParser
from concierge.entities import (
    AgentMessage,
    AgentResponse,
    AgentSession,
    BackgroundKind,
    CaptureEvent,
    CaptureType,
    Directive,
    DirectiveAction,
    DirectivePayload,
    SceneBackground,
    SessionContext,
    SessionSnapshot,
)
from concierge.scene_orchestrator import SceneOrchestrator
from concierge.session_cache import SessionSnapshotCache, build_session_cache

logger = logging.getLogger("concierge")

DEFAULT_SUGGESTIONS = ["Show me moisturizers", "I need travel products", "What do you recommend?"]
RETURNING_SUGGESTIONS = ["Restock my favorites", "What's new for me?", "Show me something different"]
APOLOGY_MESSAGE = "I'm sorry, I encountered an issue. Could you try again?"
CONTACT_CREATED_LABEL = "New Contact Created"

IdentityResolver = Callable[[str], Awaitable[Optional[SessionContext]]]
IdentifyHook = Callable[[str], Awaitable[bool]]
CaptureSink = Callable[[CaptureEvent], None]


def build_agent_source() -> AgentSource:
    if settings.USE_SIMULATED_AGENT:
        return SimulatedAgent()
    return LlmAgent()


def build_response_assembler() -> ResponseAssembler:
    extractor = CaptureExtractor.from_policy(settings.load_capture_policy())
    return ResponseAssembler(parser=DirectiveParser(), extractor=extractor)


def first_sentence(text: str) -> str:
    head = re.split(r"[.!?]", text or "", maxsplit=1)[0].strip()
    return head or "Welcome!"


def normalize_welcome(response: AgentResponse, identity_tier: str) -> Directive:
    """
    Whatever the agent answered to the welcome prompt, the first screen is a
    WELCOME_SCENE. Only known customers may get a generated background.
    """
    directive = response.directive
    payload = dataclasses.replace(directive.payload) if directive else DirectivePayload()

    if directive is None or directive.action != DirectiveAction.WELCOME_SCENE:
        payload.welcome_message = payload.welcome_message or first_sentence(response.message)
        payload.welcome_subtext = payload.welcome_subtext or response.message or ""
        payload.scene_context = payload.scene_context or {"setting": "neutral", "generateBackground": False}

    if identity_tier != "known":
        payload.scene_context = {**(payload.scene_context or {}), "setting": "neutral", "generateBackground": False}

    return Directive(action=DirectiveAction.WELCOME_SCENE, payload=payload)


def downgrade_welcome(directive: Directive) -> Directive:
    """A WELCOME_SCENE mid-conversation still renders its products/scene, minus the overlay."""
    if directive.action != DirectiveAction.WELCOME_SCENE:
        return directive
    action = DirectiveAction.SHOW_PRODUCTS if directive.payload.products else DirectiveAction.CHANGE_SCENE
    return dataclasses.replace(directive, action=action)


class ConversationEngine(BaseUtils):
    """
    Single owner of one shopper-facing conversation: transcript, suggestions,
    the scene and the upstream agent session.

    Every await (identity resolution, agent call, background generation) is
    followed by an epoch check: switching identity or resetting bumps the
    epoch, and results that arrive for a conversation the user left are
    dropped.
    """

    def __init__(
        self,
        agent: Optional[AgentSource] = None,
        scene: Optional[SceneOrchestrator] = None,
        assembler: Optional[ResponseAssembler] = None,
        cache: Optional[SessionSnapshotCache] = None,
        identify_hook: Optional[IdentifyHook] = None,
        capture_sink: Optional[CaptureSink] = None,
    ):
        self.agent = agent or build_agent_source()
        self.scene = scene or SceneOrchestrator()
        self.assembler = assembler or build_response_assembler()
        self.cache = cache or build_session_cache()
        self.identify_hook = identify_hook
        self.capture_sink = capture_sink

        self.session = AgentSession()
        self.messages: List[AgentMessage] = []
        self.suggested_actions: List[str] = list(DEFAULT_SUGGESTIONS)
        self.captures: List[CaptureEvent] = []

        self.identity_id: Optional[str] = None
        self.context: Optional[SessionContext] = None

        self.resolving = False
        self.agent_typing = False
        self.loading_welcome = False

        self._epoch = 0
        self._resolve_epoch = 0
        self._deferred_resets: List[str] = []

    # -----------------------
    # Snapshots
    # -----------------------

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            messages=list(self.messages),
            suggested_actions=list(self.suggested_actions),
            scene_snapshot=self.scene.snapshot(),
            upstream_session_id=self.session.session_id,
            upstream_sequence=self.session.sequence,
            alt_agent_state=None if self.agent.live else self.agent.snapshot_state(),
            initialized=self.session.initialized,
        )

    def apply_snapshot(self, snapshot: SessionSnapshot) -> None:
        self._epoch += 1
        self.messages = list(snapshot.messages)
        self.suggested_actions = list(snapshot.suggested_actions)
        self.scene.restore(snapshot.scene_snapshot)
        self.session = AgentSession(
            session_id=snapshot.upstream_session_id,
            sequence=snapshot.upstream_sequence,
            initialized=snapshot.initialized,
        )
        if not self.agent.live:
            self.agent.restore_state(snapshot.alt_agent_state)
        self.loading_welcome = False
        self.agent_typing = False

    # -----------------------
    # Identity
    # -----------------------

    async def resolve_identity(self, identity_id: str, resolver: IdentityResolver) -> bool:
        """
        Resolve `identity_id` to a SessionContext and switch to it.
        Returns False when a newer resolution overtook this one.
        """
        self._resolve_epoch += 1
        ticket = self._resolve_epoch
        self.resolving = True
        logger.info(f"[session] Resolving identity {identity_id}")

        try:
            context = await resolver(identity_id)
        except Exception as e:
            logger.error(f"[session] Identity resolution failed for {identity_id}: {e}")
            context = None

        if ticket != self._resolve_epoch:
            logger.info(f"[session] Discarding late resolution for {identity_id}")
            return False

        self.resolving = False
        await self.select_identity(identity_id, context)
        return True

    async def select_identity(self, identity_id: Optional[str], context: Optional[SessionContext]) -> None:
        outgoing = self.identity_id
        if outgoing and outgoing != identity_id and self.messages:
            self.cache.save(outgoing, self)

        deferred = self._deferred_resets
        self._deferred_resets = []
        for reset_id in deferred:
            self.cache.clear(reset_id)

        # profile refresh: keep the live conversation unless it was reset meanwhile
        refresh = outgoing == identity_id and identity_id not in deferred
        if outgoing and refresh and context is not None and context.identity_tier != "anonymous":
            logger.info(f"[session] Refreshed profile of {identity_id}, keeping conversation")
            self.context = context
            return

        self._epoch += 1
        self.identity_id = identity_id
        self.context = context

        if context is None or context.identity_tier == "anonymous":
            self._show_default()
            return

        if identity_id and self.cache.restore(identity_id, self):
            return

        await self._cold_start()

    async def reset_identity(self, identity_id: str) -> None:
        """Forget the cached session of `identity_id`; the active one starts over."""
        if self.resolving:
            logger.info(f"[session] Resolution in progress, deferring reset of {identity_id}")
            self._deferred_resets.append(identity_id)
            return

        self.cache.clear(identity_id)
        if identity_id != self.identity_id:
            return
        self._epoch += 1
        if self.context is None or self.context.identity_tier == "anonymous":
            self._show_default()
        else:
            await self._cold_start()

    def _show_default(self) -> None:
        self.scene.reset()
        self.scene.set_background(SceneBackground(BackgroundKind.IMAGE, DEFAULT_IMAGE))
        self.session = AgentSession()
        self.messages = []
        self.suggested_actions = list(DEFAULT_SUGGESTIONS)
        self.loading_welcome = False
        self.agent_typing = False

    async def _cold_start(self) -> None:
        ctx = self.context
        epoch = self._epoch

        self.scene.reset()
        self.session = AgentSession()
        self.messages = []
        self.suggested_actions = []
        self.loading_welcome = True
        self.agent_typing = False

        try:
            await self.agent.init_session(self.session, ctx)
            if epoch != self._epoch:
                return

            # partner-resolved or signed-out visitors get the generic welcome screen
            if ctx.identity_tier == "appended" or (ctx.identity_tier == "known" and not ctx.authenticated):
                self.scene.set_background(SceneBackground(BackgroundKind.IMAGE, DEFAULT_IMAGE))
                self.suggested_actions = list(DEFAULT_SUGGESTIONS)
                return

            raw = await self.agent.send(self.session, build_welcome_message(ctx))
            if epoch != self._epoch:
                logger.info("[session] Discarding welcome for a conversation that was left")
                return

            response = self.assembler.assemble(raw, session_id=self.session.session_id)
            directive = normalize_welcome(response, ctx.identity_tier)
            self.messages = [AgentMessage(role="agent", content=response.message, directive=directive)]

            actions = list(response.suggested_actions)
            if not actions:
                actions = list(RETURNING_SUGGESTIONS if (
                    ctx.identity_tier == "known" and ctx.recent_purchases
                ) else DEFAULT_SUGGESTIONS)
            self.suggested_actions = actions

            await self.scene.process_directive(directive)
        except Exception as e:
            logger.error(f"[session] Welcome failed: {e}")
        finally:
            if epoch == self._epoch:
                self.loading_welcome = False

    # -----------------------
    # Conversation
    # -----------------------

    async def send_message(self, text: str) -> Optional[AgentMessage]:
        """
        Send one user message and apply the reply. Returns the agent message
        that was appended, or None when the reply arrived after the user moved on.
        """
        epoch = self._epoch
        self.messages.append(AgentMessage(role="user", content=text))
        self.suggested_actions = []
        self.agent_typing = True

        try:
            if not self.session.initialized:
                await self.agent.init_session(self.session, self.context)
            raw = await self.agent.send(self.session, text)
            response = self.assembler.assemble(raw, session_id=self.session.session_id)
        except Exception as e:
            logger.error(f"[conversation] Failed to get agent response: {e}")
            if epoch != self._epoch:
                return None
            apology = AgentMessage(role="agent", content=APOLOGY_MESSAGE)
            self.messages.append(apology)
            self.agent_typing = False
            return apology

        if epoch != self._epoch:
            logger.info("[conversation] Discarding reply for a conversation that was left")
            return None

        directive = downgrade_welcome(response.directive) if response.directive else None
        agent_message = AgentMessage(role="agent", content=response.message, directive=directive)
        self.messages.append(agent_message)
        self.suggested_actions = list(response.suggested_actions)
        self.agent_typing = False

        if directive is not None:
            await self._apply_directive(directive)
        return agent_message

    async def _apply_directive(self, directive: Directive) -> None:
        payload = directive.payload
        if directive.action == DirectiveAction.IDENTIFY_CUSTOMER and payload.customer_email:
            logger.info(f"[conversation] IDENTIFY_CUSTOMER received for {payload.customer_email}")
            if self.identify_hook is not None:
                try:
                    created = await self.identify_hook(payload.customer_email)
                except Exception as e:
                    logger.error(f"[conversation] Identify hook failed for {payload.customer_email}: {e}")
                    created = False
                if created:
                    self.emit_capture(CaptureEvent(CaptureType.CONTACT_CREATED, CONTACT_CREATED_LABEL))
        else:
            await self.scene.process_directive(directive)

        for capture in payload.captures:
            self.emit_capture(capture)

    def emit_capture(self, capture: CaptureEvent) -> None:
        self.captures.append(capture)
        logger.info(f"[capture] {capture.type.value}: {capture.label}")
        if self.capture_sink is not None:
            self.capture_sink(capture)

    def clear_conversation(self) -> None:
        self.messages = []
        self.suggested_actions = list(DEFAULT_SUGGESTIONS)

    def dismiss_welcome(self) -> None:
        self.scene.dismiss_welcome()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identityId": self.identity_id,
            "messages": [
                {
                    "id": m.id,
                    "role": m.role,
                    "content": m.content,
                    "timestamp": m.timestamp.isoformat(),
                    "uiDirective": m.directive.to_dict() if m.directive else None,
                }
                for m in self.messages
            ],
            "suggestedActions": list(self.suggested_actions),
            "scene": self.scene.state.to_dict(),
            "captures": [c.to_dict() for c in self.captures],
            "isResolving": self.resolving,
            "isAgentTyping": self.agent_typing,
            "isLoadingWelcome": self.loading_welcome,
        }
