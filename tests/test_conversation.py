import asyncio
import dataclasses
import json

from concierge.agent_response import ResponseAssembler
from concierge.background_service import DEFAULT_IMAGE
from concierge.conversation import (
    APOLOGY_MESSAGE,
    CONTACT_CREATED_LABEL,
    DEFAULT_SUGGESTIONS,
    RETURNING_SUGGESTIONS,
    ConversationEngine,
    downgrade_welcome,
    first_sentence,
    normalize_welcome,
)
from concierge.entities import (
    AgentResponse,
    CaptureType,
    Directive,
    DirectiveAction,
    DirectivePayload,
    SceneLayout,
    SessionContext,
)
from concierge.scene_orchestrator import SceneOrchestrator
from concierge.session_cache import SessionSnapshotCache

from fakes import FakeGenerator, ScriptedAgent


def directive_reply(prose, action, **payload):
    return f"{prose}\n" + json.dumps({"uiDirective": {"action": action, "payload": payload}})


WELCOME_REPLY = directive_reply(
    "Welcome back, Sarah! Ready for Mykonos?",
    "WELCOME_SCENE",
    welcomeMessage="Welcome back, Sarah!",
    welcomeSubtext="Your trip is coming up",
    sceneContext={"setting": "travel", "generateBackground": True},
)

SERUMS_REPLY = directive_reply(
    "Here are two serums I love.",
    "SHOW_PRODUCTS",
    products=[{"id": "serum-vitc", "name": "Vitamin C Serum"}, {"id": "serum-retinol", "name": "Night Retinol Serum"}],
    sceneContext={"setting": "travel"},
)

MIKE = SessionContext(customer_id="mike", name="Mike", identity_tier="known", authenticated=True)


def make_engine(replies=None, generator=None, agent=None, **kwargs):
    return ConversationEngine(
        agent=agent or ScriptedAgent(replies),
        scene=SceneOrchestrator(generator or FakeGenerator()),
        assembler=ResponseAssembler(),
        cache=SessionSnapshotCache(),
        **kwargs,
    )


# -----------------------
# Welcome / cold start
# -----------------------

def test_known_customer_gets_personalized_welcome(known_context):
    engine = make_engine([WELCOME_REPLY])
    asyncio.run(engine.select_identity("sarah", known_context))

    assert engine.agent.init_calls == 1
    assert engine.agent.sent[0].startswith("[WELCOME]")
    assert len(engine.messages) == 1
    assert engine.messages[0].role == "agent"
    assert "Welcome back, Sarah!" in engine.messages[0].content

    state = engine.scene.state
    assert state.welcome_active
    assert state.welcome_data.message == "Welcome back, Sarah!"
    assert state.setting == "travel"
    assert state.background.value == "/assets/generated/scene.png"
    assert engine.suggested_actions == RETURNING_SUGGESTIONS
    assert engine.loading_welcome is False


def test_appended_identity_skips_the_welcome_turn():
    engine = make_engine()
    ctx = SessionContext(customer_id="partner-1", identity_tier="appended", appended_interests=["hiking"])
    asyncio.run(engine.select_identity("partner-1", ctx))

    assert engine.agent.init_calls == 1
    assert engine.agent.sent == []
    assert engine.messages == []
    assert engine.scene.state.background.value == DEFAULT_IMAGE
    assert engine.suggested_actions == DEFAULT_SUGGESTIONS


def test_unauthenticated_known_identity_skips_the_welcome_turn(known_context):
    known_context.authenticated = False
    engine = make_engine()
    asyncio.run(engine.select_identity("sarah", known_context))
    assert engine.agent.sent == []
    assert engine.scene.state.background.value == DEFAULT_IMAGE


def test_anonymous_gets_default_scene_without_upstream_session():
    engine = make_engine()
    asyncio.run(engine.select_identity(None, None))

    assert engine.agent.init_calls == 0
    assert engine.session.initialized is False
    assert engine.scene.state.background.value == DEFAULT_IMAGE
    assert engine.suggested_actions == DEFAULT_SUGGESTIONS


def test_plain_welcome_reply_is_wrapped_as_welcome_scene(known_context):
    gen = FakeGenerator()
    engine = make_engine(["Hello Sarah. Great to see you again!"], generator=gen)
    asyncio.run(engine.select_identity("sarah", known_context))

    state = engine.scene.state
    assert state.welcome_active
    assert state.welcome_data.message == "Hello Sarah"
    assert state.welcome_data.subtext == "Hello Sarah. Great to see you again!"
    assert state.background.value == DEFAULT_IMAGE
    assert gen.calls == []


def test_welcome_failure_is_logged_and_cleared(known_context):
    engine = make_engine([RuntimeError("agent down")])
    asyncio.run(engine.select_identity("sarah", known_context))
    assert engine.loading_welcome is False
    assert engine.messages == []


def test_normalize_welcome_forces_neutral_for_non_known_tiers():
    response = AgentResponse(
        session_id="s",
        message="Hi there!",
        directive=Directive(
            DirectiveAction.WELCOME_SCENE,
            DirectivePayload(welcome_message="Hi", scene_context={"setting": "travel", "generateBackground": True}),
        ),
    )
    directive = normalize_welcome(response, "appended")
    assert directive.payload.scene_context == {"setting": "neutral", "generateBackground": False}
    assert directive.payload.welcome_message == "Hi"

    kept = normalize_welcome(response, "known")
    assert kept.payload.scene_context["setting"] == "travel"


def test_first_sentence():
    assert first_sentence("Welcome back! Good to see you.") == "Welcome back"
    assert first_sentence("") == "Welcome!"


# -----------------------
# Identity switching
# -----------------------

def test_switching_back_restores_the_saved_session(known_context):
    engine = make_engine([WELCOME_REPLY, SERUMS_REPLY])

    async def scenario():
        await engine.select_identity("sarah", known_context)
        await engine.send_message("show me serums")
        await engine.select_identity("mike", MIKE)
        assert engine.identity_id == "mike"
        assert len(engine.messages) == 1
        await engine.select_identity("sarah", known_context)

    asyncio.run(scenario())

    assert [m.role for m in engine.messages] == ["agent", "user", "agent"]
    assert engine.messages[1].content == "show me serums"
    assert engine.session.session_id == "scripted-1"
    assert engine.session.sequence == 2
    assert engine.agent.init_calls == 2
    assert engine.agent.state == {"turns": 2}
    assert engine.scene.state.layout == SceneLayout.PRODUCT_GRID


def test_reselecting_active_identity_keeps_the_live_conversation(known_context):
    engine = make_engine([WELCOME_REPLY, SERUMS_REPLY, "Hi Mike.", "Sure thing."])
    refreshed = dataclasses.replace(known_context, name="Sarah J")

    async def scenario():
        await engine.select_identity("sarah", known_context)
        await engine.send_message("show me serums")
        await engine.select_identity("mike", MIKE)
        await engine.select_identity("sarah", known_context)
        await engine.send_message("anything else?")
        await engine.select_identity("sarah", refreshed)

    asyncio.run(scenario())

    assert [m.content for m in engine.messages if m.role == "user"] == ["show me serums", "anything else?"]
    assert len(engine.messages) == 5
    assert engine.agent.init_calls == 2
    assert engine.context.name == "Sarah J"


def test_reselecting_uncached_identity_does_not_cold_start(known_context):
    engine = make_engine([WELCOME_REPLY, SERUMS_REPLY])

    async def scenario():
        await engine.select_identity("sarah", known_context)
        await engine.send_message("show me serums")
        await engine.select_identity("sarah", known_context)

    asyncio.run(scenario())
    assert [m.role for m in engine.messages] == ["agent", "user", "agent"]
    assert engine.agent.init_calls == 1
    assert engine.scene.state.layout == SceneLayout.PRODUCT_GRID


def test_deferred_reset_of_active_identity_starts_over_on_reselect(known_context):
    engine = make_engine([WELCOME_REPLY, SERUMS_REPLY, WELCOME_REPLY])

    async def scenario():
        release = asyncio.Event()

        async def resolver(identity_id):
            await release.wait()
            return known_context

        await engine.select_identity("sarah", known_context)
        await engine.send_message("show me serums")
        task = asyncio.create_task(engine.resolve_identity("sarah", resolver))
        await asyncio.sleep(0)
        await engine.reset_identity("sarah")
        assert len(engine.messages) == 3

        release.set()
        await task

    asyncio.run(scenario())
    assert engine.agent.init_calls == 2
    assert len(engine.messages) == 1
    assert engine.agent.sent[-1].startswith("[WELCOME]")


def test_reset_of_active_identity_starts_over(known_context):
    engine = make_engine([WELCOME_REPLY, SERUMS_REPLY])

    async def scenario():
        await engine.select_identity("sarah", known_context)
        await engine.send_message("show me serums")
        await engine.reset_identity("sarah")

    asyncio.run(scenario())

    assert engine.agent.init_calls == 2
    assert engine.session.session_id == "scripted-2"
    assert len(engine.messages) == 1
    assert engine.agent.sent[-1].startswith("[WELCOME]")
    assert engine.scene.state.layout == SceneLayout.CONVERSATION_CENTERED


def test_reset_of_inactive_identity_only_drops_its_cache(known_context):
    engine = make_engine([WELCOME_REPLY])

    async def scenario():
        await engine.select_identity("sarah", known_context)
        await engine.select_identity("mike", MIKE)
        assert engine.cache.has("sarah")
        await engine.reset_identity("sarah")

    asyncio.run(scenario())
    assert not engine.cache.has("sarah")
    assert engine.identity_id == "mike"
    assert engine.agent.init_calls == 2


def test_reset_during_resolution_is_deferred(known_context):
    engine = make_engine()

    async def scenario():
        release = asyncio.Event()

        async def resolver(identity_id):
            await release.wait()
            return known_context

        await engine.select_identity("mike", MIKE)
        task = asyncio.create_task(engine.resolve_identity("sarah", resolver))
        await asyncio.sleep(0)
        assert engine.resolving

        await engine.reset_identity("mike")
        assert engine.identity_id == "mike"
        assert engine.agent.init_calls == 1

        release.set()
        assert await task is True

    asyncio.run(scenario())
    assert engine.identity_id == "sarah"
    # mike was saved on the way out, then the deferred reset dropped it
    assert not engine.cache.has("mike")


def test_late_identity_resolution_is_discarded(known_context):
    engine = make_engine()
    contexts = {"sarah": known_context, "mike": MIKE}

    async def scenario():
        gates = {"sarah": asyncio.Event(), "mike": asyncio.Event()}

        async def resolver(identity_id):
            await gates[identity_id].wait()
            return contexts[identity_id]

        first = asyncio.create_task(engine.resolve_identity("sarah", resolver))
        await asyncio.sleep(0)
        second = asyncio.create_task(engine.resolve_identity("mike", resolver))
        await asyncio.sleep(0)

        gates["sarah"].set()
        assert await first is False
        assert engine.resolving
        assert engine.identity_id is None

        gates["mike"].set()
        assert await second is True

    asyncio.run(scenario())
    assert engine.identity_id == "mike"
    assert engine.resolving is False


def test_failed_resolution_falls_back_to_anonymous():
    engine = make_engine()

    async def resolver(identity_id):
        raise ConnectionError("profile service down")

    assert asyncio.run(engine.resolve_identity("ghost", resolver)) is True
    assert engine.context is None
    assert engine.scene.state.background.value == DEFAULT_IMAGE


# -----------------------
# Messages
# -----------------------

def test_upstream_session_is_initialized_once():
    engine = make_engine(["Hi!", "Sure."])

    async def scenario():
        await engine.select_identity(None, None)
        await engine.send_message("hi")
        await engine.send_message("there")

    asyncio.run(scenario())
    assert engine.agent.init_calls == 1
    assert engine.agent.sent == ["hi", "there"]
    assert [m.role for m in engine.messages] == ["user", "agent", "user", "agent"]


def test_agent_failure_yields_apology():
    engine = make_engine([RuntimeError("timeout")])
    reply = asyncio.run(engine.send_message("hello"))

    assert reply.content == APOLOGY_MESSAGE
    assert [m.content for m in engine.messages] == ["hello", APOLOGY_MESSAGE]
    assert engine.agent_typing is False


def test_products_reply_updates_scene_and_suggestions():
    reply = directive_reply(
        "Two picks for you.",
        "SHOW_PRODUCTS",
        products=[{"id": "a", "name": "A"}, {"id": "b", "name": "B"}],
        suggestedActions=["Compare them"],
    )
    engine = make_engine([reply])
    message = asyncio.run(engine.send_message("recommend something"))

    assert message.directive.action == DirectiveAction.SHOW_PRODUCTS
    assert engine.scene.state.layout == SceneLayout.PRODUCT_GRID
    assert engine.suggested_actions == ["Compare them"]


def test_mid_conversation_welcome_is_downgraded():
    with_products = directive_reply(
        "Hi again!", "WELCOME_SCENE", welcomeMessage="Hi", products=[{"id": "a"}, {"id": "b"}]
    )
    without_products = directive_reply(
        "Hi again!", "WELCOME_SCENE", welcomeMessage="Hi", sceneContext={"setting": "gym"}
    )
    engine = make_engine([with_products, without_products])

    first = asyncio.run(engine.send_message("hey"))
    assert first.directive.action == DirectiveAction.SHOW_PRODUCTS
    assert engine.scene.state.welcome_active is False

    second = asyncio.run(engine.send_message("hey again"))
    assert second.directive.action == DirectiveAction.CHANGE_SCENE
    assert engine.scene.state.setting == "gym"
    assert engine.scene.state.welcome_active is False


def test_downgrade_leaves_other_actions_alone():
    d = Directive(DirectiveAction.RESET_SCENE)
    assert downgrade_welcome(d) is d


def test_identify_customer_calls_hook_and_records_contact():
    seen = []
    sink = []

    async def hook(email):
        seen.append(email)
        return True

    reply = directive_reply("Thanks, I've saved that.", "IDENTIFY_CUSTOMER", customerEmail="new@example.com")
    engine = make_engine([reply], identify_hook=hook, capture_sink=sink.append)
    asyncio.run(engine.send_message("my email is new@example.com"))

    assert seen == ["new@example.com"]
    assert [c.type for c in sink] == [CaptureType.CONTACT_CREATED]
    assert sink[0].label == CONTACT_CREATED_LABEL
    assert engine.scene.state.layout == SceneLayout.CONVERSATION_CENTERED


def test_identify_customer_without_new_contact_emits_nothing():
    async def hook(email):
        return False

    reply = directive_reply("Thanks!", "IDENTIFY_CUSTOMER", customerEmail="known@example.com")
    engine = make_engine([reply], identify_hook=hook)
    asyncio.run(engine.send_message("known@example.com"))
    assert engine.captures == []


def test_failing_identify_hook_keeps_the_turn():
    async def hook(email):
        raise RuntimeError("crm down")

    reply = directive_reply("Thanks, I've saved that.", "IDENTIFY_CUSTOMER", customerEmail="new@example.com")
    engine = make_engine([reply], identify_hook=hook)
    message = asyncio.run(engine.send_message("my email is new@example.com"))

    assert message is engine.messages[-1]
    assert message.content.startswith("Thanks")
    assert engine.captures == []
    assert engine.agent_typing is False


def test_payload_captures_reach_the_sink():
    sink = []
    reply = directive_reply(
        "Congratulations! Here are some ideas.",
        "SHOW_PRODUCTS",
        products=[{"id": "a", "name": "A"}],
        captures=[{"type": "meaningful_event", "label": "Event Captured: Wedding in June"}],
    )
    engine = make_engine([reply], capture_sink=sink.append)
    asyncio.run(engine.send_message("I'm getting married in June"))

    assert [c.label for c in sink] == ["Event Captured: Wedding in June"]
    assert engine.captures == sink


class SlowAgent(ScriptedAgent):
    def __init__(self, replies=None):
        super().__init__(replies)
        self.release = None

    async def send(self, session, text):
        await self.release.wait()
        return await super().send(session, text)


def test_reply_for_abandoned_conversation_is_dropped():
    agent = SlowAgent(["Late reply"])
    engine = make_engine(agent=agent)

    async def scenario():
        agent.release = asyncio.Event()
        task = asyncio.create_task(engine.send_message("hello"))
        await asyncio.sleep(0)
        assert engine.agent_typing
        await engine.select_identity(None, None)
        agent.release.set()
        return await task

    assert asyncio.run(scenario()) is None
    assert engine.messages == []
    assert engine.agent_typing is False


def test_clear_dismiss_and_state_dict(known_context):
    engine = make_engine([WELCOME_REPLY])
    asyncio.run(engine.select_identity("sarah", known_context))

    engine.dismiss_welcome()
    assert engine.scene.state.welcome_active is False

    state = engine.to_dict()
    assert state["identityId"] == "sarah"
    assert state["messages"][0]["uiDirective"]["action"] == "WELCOME_SCENE"
    assert state["scene"]["setting"] == "travel"
    assert state["isLoadingWelcome"] is False

    engine.clear_conversation()
    assert engine.messages == []
    assert engine.suggested_actions == DEFAULT_SUGGESTIONS
