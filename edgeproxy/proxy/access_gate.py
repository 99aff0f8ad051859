from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from edgeproxy.services.store import ProxyStore

REASON_NOT_ALLOWED = "not in whitelist"
REASON_REDIRECT_NOT_ALLOWED = "redirect target not in whitelist"


@dataclass(frozen=True, slots=True)
class AccessGate:
    """Allow-list snapshot taken once per request.

    A disabled gate permits every origin, redirect targets included.
    """

    enabled: bool
    origins: frozenset[str]

    @classmethod
    def of(cls, enabled: bool, origins: Iterable[str] = ()) -> "AccessGate":
        return cls(enabled=enabled, origins=frozenset(origins))

    @classmethod
    async def load(cls, store: "ProxyStore") -> "AccessGate":
        enabled = await store.get_whitelist_enabled()
        if not enabled:
            return cls(enabled=False, origins=frozenset())
        return cls(enabled=True, origins=frozenset(await store.list_whitelist()))

    def permit(self, origin_key: str) -> bool:
        if not self.enabled:
            return True
        return origin_key in self.origins
