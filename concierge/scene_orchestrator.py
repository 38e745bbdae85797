# concierge/scene_orchestrator.py

import copy
import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from concierge.background_service import (
    DEFAULT_IMAGE,
    FALLBACK_GRADIENT,
    BackgroundGenerator,
    BackgroundOptions,
    DefaultBackgroundGenerator,
    is_gradient,
)
from concierge.base_utils import BaseUtils
from concierge.entities import (
    BackgroundKind,
    ChatPosition,
    Directive,
    DirectiveAction,
    Product,
    SceneBackground,
    SceneLayout,
    SceneSetting,
    SceneState,
    WelcomeData,
)

logger = logging.getLogger("concierge")

BASELINE_SETTING = "neutral"
DEFAULT_PRODUCT_SETTING = "bathroom"

INITIAL_SCENE = SceneState(
    layout=SceneLayout.CONVERSATION_CENTERED,
    setting=BASELINE_SETTING,
    background=SceneBackground(BackgroundKind.GRADIENT, FALLBACK_GRADIENT),
    chat_position=ChatPosition.CENTER,
    transition_key="initial",
)

# free-text theme/context -> setting, first match wins
TEXT_SETTING_HINTS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"travel|trip|vacation|flight|airport|luggage|suitcase", re.I), "travel"),
    (re.compile(r"outdoor|beach|hiking|camping|garden|park|sun", re.I), "outdoor"),
    (re.compile(r"gym|workout|fitness|exercise|active", re.I), "gym"),
    (re.compile(r"office|work|professional|desk|meeting", re.I), "office"),
    (re.compile(r"vanity|makeup|glam|mirror", re.I), "vanity"),
    (re.compile(r"bedroom|night|evening|sleep|rest", re.I), "bedroom"),
    (re.compile(r"bathroom|shower|bath|skincare|routine", re.I), "bathroom"),
    (re.compile(r"lifestyle|lounge|home|living", re.I), "lifestyle"),
]

# product categories + names -> setting, first match wins
PRODUCT_SETTING_HINTS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"foundation|lipstick|blush|mascara|makeup|palette|vanity", re.I), "vanity"),
    (re.compile(r"fragrance|perfume|cologne|eau de|scent|parfum", re.I), "bedroom"),
    (re.compile(r"shampoo|conditioner|hair", re.I), "bathroom"),
    (re.compile(r"gym|workout|active|post.workout", re.I), "gym"),
    (re.compile(r"office|work|minimal|desk", re.I), "office"),
    (re.compile(r"travel|luggage|portable|mini|kit|on.the.go", re.I), "travel"),
    (re.compile(r"sun|spf|outdoor|beach|hiking|uv", re.I), "outdoor"),
    (re.compile(r"moisturiz|serum|cleanser|skincare|face|eye.cream|toner|mask|bathroom|sink", re.I), "bathroom"),
    (re.compile(r"lifestyle", re.I), "lifestyle"),
]


# -----------------------
# Reducer events
# -----------------------

@dataclass(frozen=True)
class TransitionLayout:
    layout: SceneLayout
    products: Optional[List[Product]] = None


@dataclass(frozen=True)
class SetBackground:
    background: SceneBackground


@dataclass(frozen=True)
class SetSetting:
    setting: SceneSetting


@dataclass(frozen=True)
class SetProducts:
    products: List[Product]


@dataclass(frozen=True)
class OpenCheckout:
    pass


@dataclass(frozen=True)
class CloseCheckout:
    pass


@dataclass(frozen=True)
class ShowWelcome:
    welcome: WelcomeData


@dataclass(frozen=True)
class DismissWelcome:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class Restore:
    snapshot: SceneState


SceneEvent = Union[
    TransitionLayout, SetBackground, SetSetting, SetProducts, OpenCheckout,
    CloseCheckout, ShowWelcome, DismissWelcome, Reset, Restore,
]


def chat_position_for(layout: SceneLayout) -> ChatPosition:
    if layout == SceneLayout.CONVERSATION_CENTERED:
        return ChatPosition.CENTER
    if layout == SceneLayout.CHECKOUT:
        return ChatPosition.MINIMIZED
    return ChatPosition.BOTTOM


def scene_reducer(state: SceneState, event: SceneEvent) -> SceneState:
    """Pure transition function. Unknown events leave the state untouched."""
    if isinstance(event, TransitionLayout):
        seq = state.transition_seq + 1
        return dataclasses.replace(
            state,
            layout=event.layout,
            chat_position=chat_position_for(event.layout),
            products=list(event.products) if event.products is not None else state.products,
            transition_key=f"{event.layout.value}-{seq}",
            transition_seq=seq,
        )
    if isinstance(event, SetBackground):
        return dataclasses.replace(state, background=event.background)
    if isinstance(event, SetSetting):
        return dataclasses.replace(state, setting=event.setting)
    if isinstance(event, SetProducts):
        return dataclasses.replace(state, products=list(event.products))
    if isinstance(event, OpenCheckout):
        return dataclasses.replace(state, checkout_active=True, chat_position=ChatPosition.MINIMIZED)
    if isinstance(event, CloseCheckout):
        return dataclasses.replace(state, checkout_active=False, chat_position=ChatPosition.BOTTOM)
    if isinstance(event, ShowWelcome):
        state = dataclasses.replace(state, welcome_active=True, welcome_data=event.welcome)
        if state.layout == SceneLayout.CONVERSATION_CENTERED:
            return dataclasses.replace(state, chat_position=ChatPosition.CENTER)
        return scene_reducer(state, TransitionLayout(SceneLayout.CONVERSATION_CENTERED))
    if isinstance(event, DismissWelcome):
        return dataclasses.replace(state, welcome_active=False, welcome_data=None)
    if isinstance(event, Reset):
        seq = state.transition_seq + 1
        return dataclasses.replace(INITIAL_SCENE, transition_key=f"initial-{seq}", transition_seq=seq)
    if isinstance(event, Restore):
        # keep the key counter growing so later transitions never repeat a key
        return dataclasses.replace(
            event.snapshot,
            transition_seq=max(state.transition_seq, event.snapshot.transition_seq),
        )
    return state


# -----------------------
# Policy helpers
# -----------------------

def has_valid_image(background: SceneBackground) -> bool:
    return (
        background.kind == BackgroundKind.IMAGE
        and bool(background.value)
        and "default" not in background.value
    )


def is_generating(background: SceneBackground) -> bool:
    return background.kind == BackgroundKind.GENERATIVE and background.loading


def should_skip_generation(state: SceneState, setting: SceneSetting, requested: bool) -> bool:
    """
    True when a new background call would be redundant: the target setting is
    already shown (or being generated), or a real image is on screen, and the
    agent did not explicitly ask for a new one.
    """
    if requested:
        return False
    same_setting_ready = state.setting == setting and (
        has_valid_image(state.background) or is_generating(state.background)
    )
    return same_setting_ready or has_valid_image(state.background)


def infer_setting_from_text(text: str) -> Optional[SceneSetting]:
    for pattern, setting in TEXT_SETTING_HINTS:
        if pattern.search(text or ""):
            return setting
    return None


def infer_setting_from_products(products: List[Product]) -> SceneSetting:
    words = [str(p.get("category") or "").lower() for p in products]
    words += [str(p.get("name") or "").lower() for p in products]
    blob = " ".join(words)
    for pattern, setting in PRODUCT_SETTING_HINTS:
        if pattern.search(blob):
            return setting
    return DEFAULT_PRODUCT_SETTING if products else BASELINE_SETTING


def build_background_options(scene_context: Optional[Dict[str, Any]]) -> BackgroundOptions:
    """
    Map an agent sceneContext to generator options, synthesizing a prompt from
    context/theme/mood when no backgroundPrompt was given.
    """
    sc = scene_context or {}
    prompt = sc.get("backgroundPrompt")
    if not prompt:
        context = sc.get("context") or ""
        theme = sc.get("theme") or ""
        mood = sc.get("mood") or ""
        if context or theme:
            prompt = ". ".join(str(p) for p in (context, theme, mood) if p) + "."
    edit_mode = bool(sc.get("editMode"))
    return BackgroundOptions(
        background_prompt=prompt or None,
        edit_prompt=prompt if edit_mode else None,
        edit_mode=edit_mode,
        image_url=sc.get("imageUrl"),
        mood=sc.get("mood"),
        customer_context=sc.get("customerContext") or sc.get("context"),
        scene_type=sc.get("sceneType"),
        base_asset=sc.get("cmsAssetId") or sc.get("sceneAssetId") or sc.get("baseAsset"),
    )


def explicitly_requested(scene_context: Optional[Dict[str, Any]]) -> bool:
    sc = scene_context or {}
    return sc.get("generateBackground") is True or sc.get("regenerate") is True


class SceneOrchestrator(BaseUtils):
    """
    Single owner of the live SceneState. Every mutation goes through
    `dispatch`; only background generation awaits.
    """

    def __init__(self, generator: Optional[BackgroundGenerator] = None):
        self.generator = generator or DefaultBackgroundGenerator()
        self.state: SceneState = INITIAL_SCENE
        # bumped on every generation start and every reset/restore
        self._background_token = 0

    def dispatch(self, event: SceneEvent) -> SceneState:
        self.state = scene_reducer(self.state, event)
        if isinstance(event, (Reset, Restore)):
            self._background_token += 1
        return self.state

    # -----------------------
    # Direct operations
    # -----------------------

    def transition_to(self, layout: SceneLayout, products: Optional[List[Product]] = None) -> SceneState:
        return self.dispatch(TransitionLayout(layout, products))

    def set_background(self, background: SceneBackground) -> SceneState:
        return self.dispatch(SetBackground(background))

    def set_setting(self, setting: SceneSetting) -> SceneState:
        return self.dispatch(SetSetting(setting))

    def open_checkout(self) -> SceneState:
        return self.dispatch(OpenCheckout())

    def close_checkout(self) -> SceneState:
        return self.dispatch(CloseCheckout())

    def dismiss_welcome(self) -> SceneState:
        return self.dispatch(DismissWelcome())

    def reset(self) -> SceneState:
        return self.dispatch(Reset())

    def snapshot(self) -> SceneState:
        return copy.deepcopy(self.state)

    def restore(self, snapshot: SceneState) -> SceneState:
        return self.dispatch(Restore(copy.deepcopy(snapshot)))

    # -----------------------
    # Directive handling
    # -----------------------

    async def process_directive(self, directive: Directive) -> SceneState:
        action = directive.action
        payload = directive.payload

        if action in (DirectiveAction.SHOW_PRODUCT, DirectiveAction.SHOW_PRODUCTS):
            await self._show_products(payload.products or [], payload.scene_context)
        elif action == DirectiveAction.CHANGE_SCENE:
            await self._change_scene(payload.products or [], payload.scene_context)
        elif action == DirectiveAction.INITIATE_CHECKOUT:
            self.open_checkout()
        elif action == DirectiveAction.CONFIRM_ORDER:
            self.close_checkout()
        elif action == DirectiveAction.WELCOME_SCENE:
            await self._welcome(payload.welcome_message, payload.welcome_subtext, payload.scene_context)
        elif action == DirectiveAction.RESET_SCENE:
            self.reset()
        # CAPTURE_ONLY / IDENTIFY_CUSTOMER carry no visual change
        return self.state

    def resolve_setting(self, scene_context: Optional[Dict[str, Any]], products: List[Product]) -> SceneSetting:
        sc = scene_context or {}
        explicit = sc.get("setting")
        if isinstance(explicit, str) and explicit.strip():
            return explicit.strip()
        hint = " ".join(str(sc[k]) for k in ("theme", "context") if sc.get(k))
        inferred = infer_setting_from_text(hint) if hint else None
        if inferred:
            return inferred
        if has_valid_image(self.state.background):
            return self.state.setting
        return infer_setting_from_products(products)

    async def _show_products(self, products: List[Product], scene_context: Optional[Dict[str, Any]]):
        if products:
            layout = SceneLayout.PRODUCT_HERO if len(products) == 1 else SceneLayout.PRODUCT_GRID
            self.transition_to(layout, products)

        sc = dict(scene_context or {})
        setting = self.resolve_setting(sc, products)
        should_generate = sc.get("generateBackground") is not False

        if not sc.get("backgroundPrompt") and products:
            names = ", ".join(str(p.get("name") or p.get("id")) for p in products[:3])
            sc["backgroundPrompt"] = (
                f"A luxurious {setting} setting perfect for showcasing beauty products like {names}. "
                "Elegant, soft lighting, high-end atmosphere."
            )
            sc["setting"] = setting

        skip = should_skip_generation(self.state, setting, explicitly_requested(sc))
        self.set_setting(setting)

        if should_generate and not skip:
            await self._generate(setting, products, build_background_options(sc))
        elif skip:
            logger.debug(f"[scene] Skipping background generation for '{setting}'")

    async def _change_scene(self, products: List[Product], scene_context: Optional[Dict[str, Any]]):
        sc = dict(scene_context or {})
        setting = self.resolve_setting(sc, products)
        should_generate = sc.get("generateBackground") is not False

        options = build_background_options(sc)
        agent_prompt = bool(options.background_prompt)
        if not agent_prompt:
            options.background_prompt = (
                f"A luxurious {setting} setting with elegant, soft lighting and a high-end beauty atmosphere."
            )

        # a new setting or a described scene is a request for a new background
        requested = explicitly_requested(sc) or agent_prompt or setting != self.state.setting
        skip = should_skip_generation(self.state, setting, requested)
        self.set_setting(setting)

        if should_generate and not skip:
            await self._generate(setting, products, options)
        elif skip:
            logger.debug(f"[scene] Scene already shows '{setting}', not regenerating")

    async def _welcome(self, message: Optional[str], subtext: Optional[str], scene_context: Optional[Dict[str, Any]]):
        self.dispatch(ShowWelcome(WelcomeData(message=message or "Welcome!", subtext=subtext)))

        sc = scene_context or {}
        setting = sc.get("setting") or BASELINE_SETTING
        self.set_setting(setting)

        if sc.get("generateBackground") is not False:
            await self._generate(setting, [], build_background_options(sc))
        else:
            self.set_background(SceneBackground(BackgroundKind.IMAGE, DEFAULT_IMAGE))

    async def _generate(self, setting: SceneSetting, products: List[Product], options: BackgroundOptions):
        self._background_token += 1
        token = self._background_token
        self.set_background(SceneBackground(BackgroundKind.GENERATIVE, "", loading=True))

        try:
            result = await self.generator.generate(setting, products, options)
            if not isinstance(result, str) or not result:
                raise ValueError(f"Background generator returned {result!r}")
            kind = BackgroundKind.GRADIENT if is_gradient(result) else BackgroundKind.IMAGE
            background = SceneBackground(kind, result)
        except Exception as e:
            logger.error(f"[scene] Background generation failed for '{setting}': {e}")
            background = SceneBackground(BackgroundKind.GRADIENT, FALLBACK_GRADIENT)

        if token != self._background_token:
            # superseded by a newer generation, a reset or a restore
            logger.info(f"[scene] Discarding stale background result for '{setting}'")
            return
        self.set_background(background)
