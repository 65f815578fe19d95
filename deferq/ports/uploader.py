"""
ObjectUploaderPort — external object storage for work images.

deferq never talks to an image provider itself; the creation flow only needs
"store these bytes, give me a URL back".
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ObjectUploaderPort(Protocol):
    async def upload(self, data: bytes, folder: str) -> str:
        """Store `data` under `folder` and return its public URL."""
        ...
