# appblock/remote/base.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import List, Optional, Protocol, Sequence


@dataclass(frozen=True, slots=True)
class RemotePolicy:
    """One enforcement object as enumerated from the controller."""

    remote_id: str
    name: str


@dataclass(frozen=True, slots=True)
class RecurringWindow:
    days: Sequence[str]
    start: time
    end: time


class EnforcementClient(Protocol):
    """
    Contract of the remote controller as seen by the rule engine.

    Every method raises ``appblock.errors.RemoteError`` on controller or
    transport failure and ``NotAuthenticated`` when the session carries no
    credential. Calls are bounded by the client's own timeout.
    """

    async def create_policy(
        self,
        name: str,
        app_ids: Sequence[str],
        target_devices: Sequence[str],
        enabled: bool,
        *,
        networks: Sequence[str] = (),
        schedule: Optional[RecurringWindow] = None,
    ) -> Optional[str]: ...

    async def delete_policy(self, remote_id: str) -> None: ...

    async def list_policies(self) -> List[RemotePolicy]: ...
