"""Reference-counted ownership of in-memory preview images."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional
from uuid import uuid4

from .services.extraction.errors import UnknownResourceError

logger = logging.getLogger(__name__)


@dataclass
class PreviewResource:
    ref: str
    data: bytes
    media_type: str
    refcount: int = 1


class ResourceRegistry:
    """Tracks preview buffers and frees each one exactly once.

    ``acquire`` hands out a reference owning one count; ``retain`` adds an owner;
    ``release`` drops one and frees the buffer when the count reaches zero. Only
    job deletion or a full store reset should release, never display concerns.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: Dict[str, PreviewResource] = {}
        self.freed_total = 0

    def acquire(self, data: bytes, media_type: str = "image/jpeg") -> str:
        ref = f"preview:{uuid4().hex}"
        with self._lock:
            self._resources[ref] = PreviewResource(ref=ref, data=bytes(data), media_type=media_type)
        logger.debug("Acquired preview %s (%d bytes)", ref, len(data))
        return ref

    def retain(self, ref: str) -> int:
        with self._lock:
            resource = self._resources.get(ref)
            if resource is None:
                raise UnknownResourceError(ref)
            resource.refcount += 1
            return resource.refcount

    def release(self, ref: str) -> bool:
        """Drop one reference. Returns True when the buffer was freed."""
        with self._lock:
            resource = self._resources.get(ref)
            if resource is None:
                raise UnknownResourceError(ref)
            resource.refcount -= 1
            if resource.refcount > 0:
                return False
            del self._resources[ref]
            self.freed_total += 1
        logger.debug("Freed preview %s", ref)
        return True

    def get(self, ref: Optional[str]) -> Optional[PreviewResource]:
        if not ref:
            return None
        with self._lock:
            return self._resources.get(ref)

    def refcount(self, ref: str) -> int:
        with self._lock:
            resource = self._resources.get(ref)
            return resource.refcount if resource is not None else 0

    def __contains__(self, ref: object) -> bool:
        with self._lock:
            return ref in self._resources

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)
