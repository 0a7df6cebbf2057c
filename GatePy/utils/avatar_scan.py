# -*- coding: utf-8 -*-
"""Avatar risk classifiers and the reverse image search link shown to staff.

A classifier never raises: any fetch or decode problem yields the default,
unflagged :class:`ScanResult` and a warning in the log.
"""

import asyncio
import io
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout
from PIL import Image, UnidentifiedImageError

from models.gate_config import DEFAULT_IMAGE_SEARCH_URL_TEMPLATE, DEFAULT_NSFW_THRESHOLD, DEFAULT_SKIN_EDGE_THRESHOLD

log = logging.getLogger(__name__)

FETCH_TIMEOUT = 5
EDGE_FRACTION = 0.08
AVATAR_SCAN_SIZE = 512


@dataclass(frozen=True)
class ScanThresholds:
    nsfw: float = DEFAULT_NSFW_THRESHOLD
    skin_edge: float = DEFAULT_SKIN_EDGE_THRESHOLD

    @classmethod
    def from_settings(cls, settings) -> "ScanThresholds":
        return cls(nsfw=settings.avatar_scan_nsfw_threshold, skin_edge=settings.avatar_scan_skin_edge_threshold)


@dataclass(frozen=True)
class ScanResult:
    nsfw_score: float | None = None
    skin_edge_score: float = 0.0
    flagged: bool = False
    reason: str = "none"


def classify_scores(nsfw_score: float | None, skin_edge_score: float, thresholds: ScanThresholds) -> ScanResult:
    nsfw_hit = nsfw_score is not None and nsfw_score >= thresholds.nsfw
    edge_hit = skin_edge_score >= thresholds.skin_edge
    if nsfw_hit and edge_hit:
        reason = "both"
    elif nsfw_hit:
        reason = "nsfw"
    elif edge_hit:
        reason = "skin_edge"
    else:
        reason = "none"
    return ScanResult(
        nsfw_score=nsfw_score, skin_edge_score=skin_edge_score, flagged=nsfw_hit or edge_hit, reason=reason
    )


def is_skin_tone(r: int, g: int, b: int) -> bool:
    spread = max(r, g, b) - min(r, g, b)
    return (
        r > 95
        and g > 40
        and b > 20
        and spread > 15
        and abs(r - g) > 15
        and r > g
        and r > b
        and not (r > 250 and g > 250 and b > 250)
    )


def skin_edge_score(image: Image.Image) -> float:
    """Share of skin-toned pixels in a border 8% of the shorter side thick."""
    image = image.convert("RGB")
    width, height = image.size
    if width <= 0 or height <= 0:
        return 0.0
    thickness = max(1, round(min(width, height) * EDGE_FRACTION))
    pixels = image.load()

    total = 0
    skin = 0
    for y in range(height):
        for x in range(width):
            if thickness <= x < width - thickness and thickness <= y < height - thickness:
                continue
            total += 1
            if is_skin_tone(*pixels[x, y]):
                skin += 1
    return skin / total if total else 0.0


def skin_edge_score_from_bytes(data: bytes) -> float:
    with Image.open(io.BytesIO(data)) as image:
        return skin_edge_score(image)


async def fetch_image(url: str, timeout: float = FETCH_TIMEOUT) -> bytes | None:
    async with ClientSession(timeout=ClientTimeout(total=timeout)) as session:
        async with session.get(url) as response:
            if response.status != 200:
                log.warning("Avatar fetch for %s returned HTTP %d", url, response.status)
                return None
            return await response.read()


class AvatarClassifier(ABC):
    """Scores an avatar image URL against thresholds."""

    async def scan(self, image_url: str, thresholds: ScanThresholds | None = None) -> ScanResult:
        thresholds = thresholds or ScanThresholds()
        try:
            data = await fetch_image(image_url)
            if data is None:
                return ScanResult()
            return await self.classify(data, thresholds)
        except (ClientError, asyncio.TimeoutError, UnidentifiedImageError, OSError, ValueError):
            log.warning("Avatar scan of %s failed", image_url, exc_info=True)
            return ScanResult()

    @abstractmethod
    async def classify(self, data: bytes, thresholds: ScanThresholds) -> ScanResult:
        raise NotImplementedError


class HeuristicAvatarClassifier(AvatarClassifier):
    """Skin-tone ratio along the image border; never produces an NSFW score."""

    async def classify(self, data: bytes, thresholds: ScanThresholds) -> ScanResult:
        edge = await asyncio.to_thread(skin_edge_score_from_bytes, data)
        return classify_scores(None, edge, thresholds)


class ModelAvatarClassifier(HeuristicAvatarClassifier):
    """Adds a pluggable NSFW model on top of the border heuristic.

    ``model`` receives the raw image bytes and returns a probability in [0, 1].
    If it fails, the heuristic result alone is reported.
    """

    def __init__(self, model: Callable[[bytes], Awaitable[float]]):
        self.model = model

    async def classify(self, data: bytes, thresholds: ScanThresholds) -> ScanResult:
        edge = await asyncio.to_thread(skin_edge_score_from_bytes, data)
        try:
            nsfw = float(await self.model(data))
        except Exception:
            log.debug("NSFW model unavailable, using heuristic only", exc_info=True)
            nsfw = None
        return classify_scores(nsfw, edge, thresholds)


def build_reverse_image_url(template: str | None, avatar_url: str) -> str:
    """Fill ``{avatarUrl}`` in the guild's search template, or append it as a query parameter."""
    template = template or DEFAULT_IMAGE_SEARCH_URL_TEMPLATE
    encoded = quote(avatar_url, safe="")
    if "{avatarUrl}" in template:
        return template.replace("{avatarUrl}", encoded)
    separator = "&" if "?" in template else "?"
    return f"{template}{separator}avatar={encoded}"
