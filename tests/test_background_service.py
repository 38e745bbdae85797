import asyncio
import random
from types import SimpleNamespace

from concierge.background_service import (
    KNOWN_GRADIENTS,
    MAX_CACHED_BACKGROUNDS,
    BackgroundOptions,
    DefaultBackgroundGenerator,
    get_fallback_gradient,
    is_gradient,
    is_novel_prompt,
)

NOVEL = "a rainy Paris rooftop at dusk"


class FakeImages:
    def __init__(self, url=None, b64=None, error=None):
        self.url = url
        self.b64 = b64
        self.error = error
        self.prompts = []

    def generate(self, model, prompt, size, n):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(data=[SimpleNamespace(url=self.url, b64_json=self.b64)])


def openai_generator(images, **kwargs):
    kwargs.setdefault("preseeded", {})
    kwargs.setdefault("enabled", True)
    return DefaultBackgroundGenerator(provider="openai", client=SimpleNamespace(images=images), **kwargs)


def test_preseeded_asset_is_used_and_cached():
    gen = DefaultBackgroundGenerator(provider="none", enabled=False, rng=random.Random(3))
    first = asyncio.run(gen.generate("bathroom", []))
    assert first.startswith("/assets/backgrounds/bathroom-")
    assert asyncio.run(gen.generate("bathroom", [])) == first


def test_preseeded_pick_never_repeats_back_to_back():
    gen = DefaultBackgroundGenerator(provider="none", enabled=False, rng=random.Random(7))
    picks = [gen.pick_preseeded("travel") for _ in range(25)]
    assert all(a != b for a, b in zip(picks, picks[1:]))
    assert gen.pick_preseeded("office") == "/assets/backgrounds/office-3.jpg"
    assert gen.pick_preseeded("office") == "/assets/backgrounds/office-3.jpg"
    assert gen.pick_preseeded("spaceship") is None


def test_agent_image_url_wins():
    gen = DefaultBackgroundGenerator(provider="none", enabled=False)
    url = asyncio.run(gen.generate("gym", [], BackgroundOptions(image_url="https://cdn/x.png")))
    assert url == "https://cdn/x.png"


def test_background_cache_is_bounded():
    gen = DefaultBackgroundGenerator(provider="none", enabled=False)
    for i in range(MAX_CACHED_BACKGROUNDS + 10):
        asyncio.run(gen.generate("gym", [], BackgroundOptions(background_prompt=f"gym {i}", image_url=f"/img/{i}.png")))
    assert len(gen._cache) == MAX_CACHED_BACKGROUNDS
    assert gen.cache_key("gym", BackgroundOptions(background_prompt="gym 0")) not in gen._cache
    newest = BackgroundOptions(background_prompt=f"gym {MAX_CACHED_BACKGROUNDS + 9}")
    assert asyncio.run(gen.generate("gym", [], newest)) == f"/img/{MAX_CACHED_BACKGROUNDS + 9}.png"


def test_disabled_generation_returns_setting_gradient():
    gen = DefaultBackgroundGenerator(provider="openai", enabled=False, preseeded={})
    assert asyncio.run(gen.generate("travel", [])) == KNOWN_GRADIENTS["travel"]


def test_no_provider_returns_gradient_even_for_novel_prompt():
    gen = DefaultBackgroundGenerator(provider="none", enabled=True)
    result = asyncio.run(gen.generate("travel", [], BackgroundOptions(background_prompt=NOVEL)))
    assert result == KNOWN_GRADIENTS["travel"]


def test_novel_prompt_skips_preseeded_and_calls_provider():
    images = FakeImages(url="https://img/rooftop.png")
    gen = openai_generator(images, preseeded=None, enabled=False)

    result = asyncio.run(gen.generate("travel", [], BackgroundOptions(background_prompt=NOVEL)))
    assert result == "https://img/rooftop.png"
    assert len(images.prompts) == 1
    assert images.prompts[0].startswith("a rainy Paris rooftop at dusk. Photorealistic")

    again = asyncio.run(gen.generate("travel", [], BackgroundOptions(background_prompt=NOVEL)))
    assert again == result
    assert len(images.prompts) == 1


def test_provider_prompt_mentions_mood_and_products():
    images = FakeImages(url="https://img/vanity.png")
    gen = openai_generator(images)
    products = [{"id": "l1", "name": "Velvet Lipstick"}]
    asyncio.run(gen.generate("vanity", products, BackgroundOptions(mood="romantic")))
    prompt = images.prompts[0]
    assert "elegant vanity table" in prompt
    assert "romantic mood" in prompt
    assert "Velvet Lipstick" in prompt


def test_base64_result_becomes_data_url():
    gen = openai_generator(FakeImages(b64="aGVsbG8="))
    assert asyncio.run(gen.generate("gym", [])) == "data:image/png;base64,aGVsbG8="


def test_provider_error_falls_back_to_setting_gradient():
    gen = openai_generator(FakeImages(error=RuntimeError("rate limited")))
    assert asyncio.run(gen.generate("bedroom", [])) == KNOWN_GRADIENTS["bedroom"]

    empty = openai_generator(FakeImages())
    assert asyncio.run(empty.generate("bedroom", [])) == KNOWN_GRADIENTS["bedroom"]


def test_cache_key_prefers_prompt_then_asset():
    gen = DefaultBackgroundGenerator(provider="none", enabled=False)
    assert gen.cache_key("gym", BackgroundOptions(background_prompt=NOVEL)) == f"gym-prompt-{NOVEL}"
    assert gen.cache_key("gym", BackgroundOptions(base_asset="asset-9")) == "asset-9"
    assert gen.cache_key("gym", BackgroundOptions()) == "gym"


def test_novel_prompt_detection():
    assert is_novel_prompt(NOVEL, "travel")
    assert is_novel_prompt(None, "moon base")
    assert not is_novel_prompt(None, "travel")
    assert not is_novel_prompt(
        "A luxurious bathroom setting perfect for showcasing beauty products like Cream. "
        "Elegant, soft lighting, high-end atmosphere.",
        "bathroom",
    )


def test_gradient_helpers():
    assert get_fallback_gradient("unknown") == KNOWN_GRADIENTS["neutral"]
    assert is_gradient(KNOWN_GRADIENTS["gym"])
    assert not is_gradient("/assets/backgrounds/gym-1.jpg")
    assert not is_gradient(None)
