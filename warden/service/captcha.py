from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from typing import Protocol
from xml.sax.saxutils import escape

from warden.config import Settings
from warden.logging import get_logger

logger = get_logger(__name__)

# no 0/o, 1/i/l: they are ambiguous once distorted
CAPTCHA_ALPHABET = "abcdefghjkmnpqrstuvwxyzABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class CaptchaCache(Protocol):
    async def set_captcha(self, ip: str, user_agent: str, text: str, ttl_seconds: int) -> None: ...

    async def consume_captcha(self, ip: str, user_agent: str, submitted: str) -> bool: ...


class CaptchaRenderer(Protocol):
    def render(self, text: str) -> str:
        """Return an SVG document for ``text``."""
        ...


@dataclass
class CaptchaImage:
    """Inline image payload; the expected text is never part of it."""

    image: str


class SvgCaptchaRenderer:
    """Render coloured, jittered glyphs with a few noise curves over a flat background."""

    def __init__(
        self,
        *,
        width: int = 150,
        height: int = 50,
        noise: int = 2,
        color: bool = True,
        background: str = "#f0f0f0",
        font_size: int = 36,
    ) -> None:
        self.width = width
        self.height = height
        self.noise = noise
        self.color = color
        self.background = background
        self.font_size = font_size
        self._rng = secrets.SystemRandom()

    def _random_color(self, low: int = 40, high: int = 180) -> str:
        if not self.color:
            return "#444"
        r, g, b = (self._rng.randint(low, high) for _ in range(3))
        return f"#{r:02x}{g:02x}{b:02x}"

    def _noise_path(self) -> str:
        rng = self._rng
        start = (rng.randint(0, self.width // 5), rng.randint(5, self.height - 5))
        end = (rng.randint(self.width * 4 // 5, self.width), rng.randint(5, self.height - 5))
        c1 = (rng.randint(self.width // 5, self.width // 2), rng.randint(0, self.height))
        c2 = (rng.randint(self.width // 2, self.width * 4 // 5), rng.randint(0, self.height))
        return (
            f'<path d="M{start[0]} {start[1]} C{c1[0]} {c1[1]},{c2[0]} {c2[1]},{end[0]} {end[1]}" '
            f'stroke="{self._random_color(60, 200)}" fill="none" stroke-width="2"/>'
        )

    def render(self, text: str) -> str:
        slot = self.width / (len(text) + 1)
        parts = [
            f'<svg xmlns="http://www.w3.org/2000/svg" width="{self.width}" height="{self.height}" '
            f'viewBox="0,0,{self.width},{self.height}">',
            f'<rect width="100%" height="100%" fill="{escape(self.background)}"/>',
        ]
        parts.extend(self._noise_path() for _ in range(self.noise))
        for index, char in enumerate(text):
            x = round(slot * (index + 1) + self._rng.uniform(-4, 4), 1)
            y = round(self.height * 0.7 + self._rng.uniform(-4, 4), 1)
            angle = self._rng.randint(-25, 25)
            parts.append(
                f'<text x="{x}" y="{y}" font-size="{self.font_size}" font-family="monospace" '
                f'text-anchor="middle" fill="{self._random_color()}" '
                f'transform="rotate({angle} {x} {y})">{escape(char)}</text>'
            )
        parts.append("</svg>")
        return "".join(parts)


class CaptchaService:
    """Issue and verify single-use captcha challenges bound to ``(ip, user_agent)``."""

    def __init__(
        self,
        cache: CaptchaCache,
        settings: Settings,
        *,
        renderer: CaptchaRenderer | None = None,
        size: int = 4,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.renderer = renderer or SvgCaptchaRenderer()
        self.size = size

    def _generate_text(self) -> str:
        return "".join(secrets.choice(CAPTCHA_ALPHABET) for _ in range(self.size))

    async def issue(self, ip: str, user_agent: str) -> CaptchaImage:
        text = self._generate_text()
        await self.cache.set_captcha(ip, user_agent, text, self.settings.captcha_expires_in)
        svg = self.renderer.render(text)
        encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
        logger.debug("captcha_issued", ip=ip)
        return CaptchaImage(image=f"data:image/svg+xml;base64,{encoded}")

    async def verify(self, ip: str, user_agent: str, submitted: str) -> bool:
        if not submitted:
            return False
        return await self.cache.consume_captcha(ip, user_agent, submitted)
