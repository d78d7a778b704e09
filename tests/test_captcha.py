"""Captcha issue/verify: single use, bound to (ip, user agent), short TTL."""

import base64

import pytest

from warden.service.captcha import CAPTCHA_ALPHABET, CaptchaService, SvgCaptchaRenderer
from warden.storage.keys import captcha_key
from warden.storage.memory_cache import MemoryCache

IP = "10.0.0.7"
UA = "Mozilla/5.0 (test)"


class RecordingRenderer:
    def __init__(self):
        self.rendered = []

    def render(self, text: str) -> str:
        self.rendered.append(text)
        return "<svg/>"


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def captcha(cache, settings):
    return CaptchaService(cache, settings)


async def test_issue_returns_svg_data_uri_and_stores_text(captcha, cache):
    image = await captcha.issue(IP, UA)

    prefix = "data:image/svg+xml;base64,"
    assert image.image.startswith(prefix)
    svg = base64.b64decode(image.image[len(prefix):]).decode("utf-8")
    assert svg.startswith("<svg")
    assert 'fill="#f0f0f0"' in svg

    stored = await cache.get_captcha(IP, UA)
    assert stored is not None
    assert len(stored) == 4
    assert all(ch in CAPTCHA_ALPHABET for ch in stored)


def test_alphabet_excludes_lookalikes():
    assert not set("0o1il") & set(CAPTCHA_ALPHABET)


async def test_issue_applies_configured_ttl(captcha, cache, settings):
    await captcha.issue(IP, UA)
    assert await cache.get_ttl(captcha_key(IP, UA)) == settings.captcha_expires_in == 120


async def test_verify_succeeds_exactly_once_case_insensitive(captcha, cache):
    await captcha.issue(IP, UA)
    text = await cache.get_captcha(IP, UA)

    assert await captcha.verify(IP, UA, text.swapcase()) is True
    assert await captcha.verify(IP, UA, text) is False
    assert await cache.get_captcha(IP, UA) is None


async def test_mismatch_does_not_consume_challenge(captcha, cache):
    await captcha.issue(IP, UA)
    text = await cache.get_captcha(IP, UA)

    assert await captcha.verify(IP, UA, "zzzz" if text.lower() != "zzzz" else "yyyy") is False
    assert await cache.get_captcha(IP, UA) == text
    assert await captcha.verify(IP, UA, text) is True


async def test_verify_is_bound_to_ip_and_user_agent(captcha, cache):
    await captcha.issue(IP, UA)
    text = await cache.get_captcha(IP, UA)

    assert await captcha.verify("10.0.0.8", UA, text) is False
    assert await captcha.verify(IP, UA + " other", text) is False
    assert await captcha.verify(IP, UA, text) is True


async def test_verify_fails_after_expiry(captcha, cache, clock):
    await captcha.issue(IP, UA)
    text = await cache.get_captcha(IP, UA)

    clock.advance(121)
    assert await captcha.verify(IP, UA, text) is False


async def test_verify_rejects_empty_submission(captcha):
    await captcha.issue(IP, UA)
    assert await captcha.verify(IP, UA, "") is False


async def test_reissue_replaces_previous_challenge(cache, settings):
    renderer = RecordingRenderer()
    service = CaptchaService(cache, settings, renderer=renderer)

    await service.issue(IP, UA)
    await service.issue(IP, UA)

    assert len(renderer.rendered) == 2
    assert await cache.get_captcha(IP, UA) == renderer.rendered[-1]


def test_svg_renderer_draws_each_glyph_and_noise():
    renderer = SvgCaptchaRenderer(noise=2)
    svg = renderer.render("aB3k")

    assert svg.count("<text") == 4
    assert svg.count("<path") == 2
    assert svg.endswith("</svg>")


def test_svg_renderer_monochrome_option():
    svg = SvgCaptchaRenderer(color=False).render("abcd")
    assert 'fill="#444"' in svg
