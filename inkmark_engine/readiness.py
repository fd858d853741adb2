"""Image readiness gate.

A single well-known proxy image element holds the raster being recognised.
Geometry is only ever produced after the element reports decoded natural
dimensions; there is no timeout on the decode wait.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from .errors import ImageDecodeError
from .geometry import page_to_screen
from .types import CameraTransform, ImageGeometry, Rect

logger = logging.getLogger(__name__)

PROXY_ELEMENT_ID = "scan"


def decode_size(data: bytes) -> tuple[int, int]:
    """Fully decode the bitmap; runs on a worker thread."""
    with Image.open(BytesIO(data)) as img:
        img.load()
        return img.size


@dataclass
class ProxyImage:
    """Off-screen image element mirroring the capture raster.

    Decoding starts as a task after a source is assigned and runs the
    bitmap decode on a worker thread, like a browser image element;
    listeners await `decoded()`.
    """
    element_id: str = PROXY_ELEMENT_ID
    src: bytes | None = field(default=None, repr=False)
    complete: bool = False
    natural_width: int = 0
    natural_height: int = 0
    screen_rect: Rect | None = None  # on-screen position/size ("style")
    synced_camera: CameraTransform | None = None
    _generation: int = 0
    _waiter: asyncio.Future | None = field(default=None, repr=False)
    _decode_task: asyncio.Task | None = field(default=None, repr=False)

    def assign_source(self, data: bytes) -> None:
        if self.src == data and self.complete:
            # Same bitmap already decoded: dimensions are available synchronously.
            return
        self._generation += 1
        self._abandon("superseded by a newer image source")
        self.src = data
        self.complete = False
        self.natural_width = 0
        self.natural_height = 0
        loop = asyncio.get_running_loop()
        self._waiter = loop.create_future()
        self._decode_task = loop.create_task(self._decode(self._generation, data))

    def _abandon(self, reason: str) -> None:
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_exception(ImageDecodeError(reason))
        self._waiter = None

    async def _decode(self, generation: int, data: bytes) -> None:
        failure: Exception | None = None
        w = h = 0
        try:
            w, h = await asyncio.to_thread(decode_size, data)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            failure = e

        if generation != self._generation or self._waiter is None:
            return  # superseded by a newer source
        waiter = self._waiter
        if failure is not None:
            self.complete = True
            if not waiter.done():
                waiter.set_exception(ImageDecodeError(f"image failed to decode: {failure}"))
            return

        self.natural_width = int(w)
        self.natural_height = int(h)
        self.complete = True
        if not waiter.done():
            waiter.set_result((self.natural_width, self.natural_height))

    @property
    def is_decoded(self) -> bool:
        return self.complete and self.natural_width > 0 and self.natural_height > 0

    async def decoded(self) -> tuple[int, int]:
        if self.is_decoded:
            return self.natural_width, self.natural_height
        if self._waiter is None:
            raise ImageDecodeError("no image source assigned")
        return await self._waiter

    def sync_position(self, page_rect: Rect, camera: CameraTransform) -> Rect:
        self.screen_rect = page_to_screen(page_rect, camera)
        self.synced_camera = camera
        return self.screen_rect

    def reset(self) -> None:
        self._generation += 1
        self._abandon("proxy image was reset")
        self.src = None
        self.complete = False
        self.natural_width = 0
        self.natural_height = 0
        self.screen_rect = None
        self.synced_camera = None


_PROXIES: dict[str, ProxyImage] = {}


def get_proxy_image(element_id: str = PROXY_ELEMENT_ID) -> ProxyImage:
    """Create or reuse the process-wide proxy element with this id."""
    proxy = _PROXIES.get(element_id)
    if proxy is None:
        proxy = ProxyImage(element_id=element_id)
        _PROXIES[element_id] = proxy
    return proxy


class ImageReadinessGate:
    def __init__(self, proxy: ProxyImage | None = None):
        self.proxy = proxy or get_proxy_image()

    async def open(self, data: bytes, page_rect: Rect, camera: CameraTransform) -> ImageGeometry:
        """Assign the raster and return its geometry once decoded.

        Raises ImageDecodeError; never returns partial geometry.
        """
        if not data:
            raise ImageDecodeError("empty raster")
        self.proxy.assign_source(data)
        if self.proxy.is_decoded:
            logger.debug("proxy image already decoded: %dx%d", self.proxy.natural_width, self.proxy.natural_height)
        else:
            await self.proxy.decoded()

        self.proxy.sync_position(page_rect, camera)
        logger.info(
            "raster ready: natural %dx%d -> page (%.1f, %.1f, %.1fx%.1f)",
            self.proxy.natural_width,
            self.proxy.natural_height,
            page_rect.x,
            page_rect.y,
            page_rect.w,
            page_rect.h,
        )
        return ImageGeometry(
            page_rect=page_rect,
            natural_width=self.proxy.natural_width,
            natural_height=self.proxy.natural_height,
        )
