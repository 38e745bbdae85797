# concierge/background_service.py

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from openai import OpenAI

from concierge import settings
from concierge.base_utils import BaseUtils
from concierge.entities import Product, SceneSetting

logger = logging.getLogger("concierge")

KNOWN_GRADIENTS: Dict[str, str] = {
    "neutral": "linear-gradient(135deg, #1a1a2e 0%, #16213e 50%, #0f3460 100%)",
    "bathroom": "linear-gradient(135deg, #e8d5c4 0%, #c9b8a8 40%, #a89080 100%)",
    "travel": "linear-gradient(135deg, #2d6a4f 0%, #40916c 40%, #74c69d 100%)",
    "outdoor": "linear-gradient(135deg, #588157 0%, #a3b18a 50%, #dad7cd 100%)",
    "lifestyle": "linear-gradient(135deg, #5e548e 0%, #9f86c0 50%, #e0b1cb 100%)",
    "bedroom": "linear-gradient(135deg, #2d2040 0%, #4a3560 50%, #6b4f80 100%)",
    "vanity": "linear-gradient(135deg, #d4a5a5 0%, #c48b9f 50%, #9e6b8a 100%)",
    "gym": "linear-gradient(135deg, #2c3e50 0%, #4a6572 50%, #6a8ea0 100%)",
    "office": "linear-gradient(135deg, #e8e8e0 0%, #c8c8c0 50%, #a8a8a0 100%)",
}

# the one value every generation failure collapses to
FALLBACK_GRADIENT = KNOWN_GRADIENTS["neutral"]
DEFAULT_IMAGE = "/assets/backgrounds/default.png"
MAX_CACHED_BACKGROUNDS = 64

KNOWN_SETTINGS = frozenset(KNOWN_GRADIENTS)

# setting -> shipped variants under /assets/backgrounds/
PRESEEDED_VARIANTS: Dict[str, Sequence[str]] = {
    "neutral": ("1", "2", "3"),
    "bathroom": ("1", "2", "3"),
    "travel": ("1", "2", "3"),
    "outdoor": ("1", "2", "3"),
    "lifestyle": ("2", "3"),
    "bedroom": ("1", "2", "3"),
    "vanity": ("1", "2", "3"),
    "gym": ("1", "3"),
    "office": ("3",),
}

SCENE_PROMPTS: Dict[str, str] = {
    "neutral": "a softly lit minimalist studio with deep blue tones",
    "bathroom": "a serene spa-like bathroom with marble counters and warm natural light",
    "travel": "a sunlit hotel terrace overlooking the sea, a travel bag on a lounge chair",
    "outdoor": "a calm garden at golden hour with soft greenery",
    "lifestyle": "a modern, airy living space with designer furniture",
    "bedroom": "a cozy bedroom at dusk with silk linens and candlelight",
    "vanity": "an elegant vanity table with a lit mirror and fresh flowers",
    "gym": "a bright boutique gym locker room with clean lines",
    "office": "a calm modern office desk by a large window",
}

# standard beauty-scene boilerplate; prompts made only of this are not novel
GENERIC_PHRASES = re.compile(
    r"^[\w\s,.-]*(luxurious|elegant|soft lighting|high-end|beauty|skincare|cosmetic|product|showcase|atmosphere|setting|perfect for)[\w\s,.-]*$",
    re.I,
)


def get_fallback_gradient(setting: SceneSetting) -> str:
    return KNOWN_GRADIENTS.get(setting, KNOWN_GRADIENTS["neutral"])


def is_gradient(value: str) -> bool:
    return (value or "").startswith("linear-gradient")


def is_novel_prompt(prompt: Optional[str], setting: SceneSetting) -> bool:
    if setting not in KNOWN_SETTINGS:
        return True
    if not prompt or GENERIC_PHRASES.match(prompt):
        return False
    logger.debug(f"[bg] Novel prompt detected: {prompt[:80]}")
    return True


def wrap_agent_prompt(prompt: str) -> str:
    return (
        f"{prompt.strip().rstrip('.')}. Photorealistic background plate for a beauty storefront, "
        "no people, no text, no products in the foreground, shallow depth of field."
    )


@dataclass
class BackgroundOptions:
    background_prompt: Optional[str] = None
    edit_prompt: Optional[str] = None
    edit_mode: bool = False
    image_url: Optional[str] = None
    mood: Optional[str] = None
    customer_context: Optional[str] = None
    scene_type: Optional[str] = None
    base_asset: Optional[str] = None


class BackgroundGenerator(Protocol):
    """
    Given a setting, products and options, returns an image reference or a
    `linear-gradient(...)` string. May raise; callers own the failure path.
    """

    async def generate(
        self,
        setting: SceneSetting,
        products: List[Product],
        options: Optional[BackgroundOptions] = None,
    ) -> str:
        ...


class DefaultBackgroundGenerator(BaseUtils):
    """
    Resolution order: agent imageUrl > preseeded asset (unless the prompt is
    novel) > gradient when generation is disabled > provider call. Results
    are cached per prompt (or per setting), oldest entries evicted first.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        enabled: Optional[bool] = None,
        client=None,
        model: Optional[str] = None,
        size: Optional[str] = None,
        preseeded: Optional[Dict[str, Sequence[str]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.provider = (provider or settings.IMAGE_PROVIDER or "none").lower()
        self.enabled = settings.ENABLE_GENERATIVE_BACKGROUNDS if enabled is None else enabled
        self.model = model or settings.IMAGE_MODEL
        self.size = size or settings.IMAGE_SIZE
        self.preseeded = PRESEEDED_VARIANTS if preseeded is None else preseeded
        self._client = client
        self._rng = rng or random.Random()
        self._cache: Dict[str, str] = {}
        self._last_variant: Dict[str, str] = {}

    @property
    def client(self):
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def cache_key(self, setting: SceneSetting, options: BackgroundOptions) -> str:
        prompt = options.background_prompt or options.edit_prompt
        if prompt:
            return f"{setting}-prompt-{prompt[:60]}"
        return options.base_asset or setting

    def pick_preseeded(self, setting: SceneSetting) -> Optional[str]:
        variants = list(self.preseeded.get(setting, ()))
        if not variants:
            return None
        last = self._last_variant.get(setting)
        pool = [v for v in variants if v != last] if len(variants) > 1 else variants
        pick = self._rng.choice(pool)
        self._last_variant[setting] = pick
        return f"/assets/backgrounds/{setting}-{pick}.jpg"

    def _remember(self, key: str, value: str) -> None:
        self._cache.pop(key, None)
        self._cache[key] = value
        while len(self._cache) > MAX_CACHED_BACKGROUNDS:
            del self._cache[next(iter(self._cache))]

    async def generate(
        self,
        setting: SceneSetting,
        products: List[Product],
        options: Optional[BackgroundOptions] = None,
    ) -> str:
        options = options or BackgroundOptions()
        key = self.cache_key(setting, options)
        novel = bool(options.background_prompt) and is_novel_prompt(options.background_prompt, setting)

        if key in self._cache:
            return self._cache[key]

        if options.image_url:
            logger.debug(f"[bg] Using agent-provided imageUrl for {setting}")
            self._remember(key, options.image_url)
            return options.image_url

        if not options.edit_mode and not novel:
            path = self.pick_preseeded(setting)
            if path:
                logger.debug(f"[bg] Using pre-seeded image for {setting} -> {path}")
                self._remember(key, path)
                return path

        if not self.enabled and not novel:
            return get_fallback_gradient(setting)

        if self.provider != "openai":
            return get_fallback_gradient(setting)

        prompt = options.background_prompt or options.edit_prompt
        prompt = wrap_agent_prompt(prompt) if prompt else self.scene_prompt(setting, products, options)
        try:
            image_url = await asyncio.to_thread(self._generate_sync, prompt)
        except Exception as e:
            logger.error(f"[bg] Background generation failed ({self.provider}): {e}")
            return get_fallback_gradient(setting)

        self._remember(key, image_url)
        return image_url

    def scene_prompt(self, setting: SceneSetting, products: List[Product], options: BackgroundOptions) -> str:
        base = SCENE_PROMPTS.get(setting, f"a {setting} setting")
        if options.mood:
            base += f", {options.mood} mood"
        names = [str(p.get("name")) for p in products[:3] if p.get("name")]
        if names:
            base += f", styled to complement {', '.join(names)}"
        return wrap_agent_prompt(base)

    def _generate_sync(self, prompt: str) -> str:
        self.color_print(f"[bg] generating image ({self.model}): {prompt[:120]}", color="cyan")
        resp = self.client.images.generate(model=self.model, prompt=prompt, size=self.size, n=1)
        data = resp.data[0]
        if getattr(data, "url", None):
            return data.url
        if getattr(data, "b64_json", None):
            return f"data:image/png;base64,{data.b64_json}"
        raise RuntimeError("Image provider returned no image")
