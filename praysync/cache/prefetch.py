"""Cold-start snapshots and the prefetched-image registry.

Snapshots are written by a bootstrap step before the first screen renders
and consulted only while the corresponding CacheStore entry has never been
populated.  They are never written to the CacheStore.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

logger = logging.getLogger("praysync.cache.prefetch")

ImageLoader = Callable[[str], Awaitable[Any]]


class PrefetchRegistry:
    """One snapshot slot per ``(user_id, resource)`` plus a set of warmed image URLs."""

    def __init__(self) -> None:
        self._slots: dict[tuple[str, str], Any] = {}
        self._images: set[str] = set()
        self._image_tasks: set[asyncio.Task[None]] = set()

    # --- snapshots ---

    def put(self, user_id: str | None, resource: str, snapshot: Any) -> None:
        if not user_id:
            logger.debug("Ignoring prefetch snapshot for %s without a user", resource)
            return
        self._slots[(user_id, resource)] = snapshot

    def get(self, user_id: str | None, resource: str) -> Any:
        if not user_id:
            return None
        return self._slots.get((user_id, resource))

    def discard(self, user_id: str | None, resource: str) -> bool:
        return self._slots.pop((user_id, resource), None) is not None

    def __len__(self) -> int:
        return len(self._slots)

    def clear(self) -> None:
        for task in list(self._image_tasks):
            task.cancel()
        self._image_tasks.clear()
        self._slots.clear()
        self._images.clear()

    # --- images ---

    def register_image(self, url: str | None) -> None:
        if url:
            self._images.add(url)

    def is_image_prefetched(self, url: str | None) -> bool:
        return bool(url) and url in self._images

    def prefetch_images(self, urls: Iterable[str | None], loader: ImageLoader) -> asyncio.Task[None] | None:
        """Warm image URLs in the background.

        Fire-and-forget: callers never await the returned task.  URLs already
        registered are skipped and individual failures only log at debug.

        Returns:
            The background task, or None when there is nothing to load.
        """
        pending = []
        for url in urls:
            if url and url not in self._images and url not in pending:
                pending.append(url)
        if not pending:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; skipping prefetch of %d images", len(pending))
            return None
        task = loop.create_task(self._load_all(pending, loader))
        self._image_tasks.add(task)
        task.add_done_callback(self._image_tasks.discard)
        return task

    async def _load_all(self, urls: list[str], loader: ImageLoader) -> None:
        results = await asyncio.gather(*(loader(url) for url in urls), return_exceptions=True)
        for url, result in zip(urls, results):
            if isinstance(result, BaseException):
                logger.debug("Image prefetch failed for %s: %s", url, result)
                continue
            self._images.add(url)
