# appblock/session.py
"""
Session context shared by every outbound controller call.

Holds the controller base address and the opaque credential handed out by the
login flow. Writers (login/logout) and readers (every remote call) go through
one asyncio lock, so a reader always sees an address/credential pair that
belongs together.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from appblock.errors import NotAuthenticated

logger = logging.getLogger("appblock.session")


@dataclass(frozen=True)
class SessionSnapshot:
    base_url: str
    credential: Optional[str]

    @property
    def authenticated(self) -> bool:
        return self.credential is not None

    def __repr__(self) -> str:
        cred = "***" if self.credential else None
        return f"SessionSnapshot(base_url={self.base_url!r}, credential={cred!r})"


class SessionContext:
    def __init__(self, base_url: str, credential: Optional[str] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._credential = credential
        self._lock = asyncio.Lock()

    async def snapshot(self) -> SessionSnapshot:
        async with self._lock:
            return SessionSnapshot(self._base_url, self._credential)

    async def require(self) -> SessionSnapshot:
        """Snapshot that is guaranteed to carry a credential."""
        snap = await self.snapshot()
        if snap.credential is None:
            raise NotAuthenticated()
        return snap

    async def is_authenticated(self) -> bool:
        return (await self.snapshot()).authenticated

    async def set(self, credential: str, base_url: Optional[str] = None) -> None:
        async with self._lock:
            if base_url:
                self._base_url = base_url.rstrip("/")
            self._credential = credential
        logger.info("Controller session established for %s", self._base_url)

    async def clear(self) -> None:
        async with self._lock:
            self._credential = None
        logger.info("Controller session cleared")
