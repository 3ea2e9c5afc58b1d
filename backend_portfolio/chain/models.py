"""
Data models for the chain data source.

Key blocks as returned by the middleware: height plus block time in
milliseconds. Treated as authoritative and monotonically increasing in both
fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(frozen=True)
class BlockRef:
    """(height, time) pair for one key block."""

    height: int
    time_ms: int
    """Block time, Unix milliseconds."""

    @classmethod
    def from_mdw_item(cls, item: dict[str, Any]) -> "BlockRef":
        """Build from a single /v3/key-blocks item."""
        return cls(height=int(item["height"]), time_ms=int(item["time"]))


class ChainDataSource(Protocol):
    """Read-only, idempotent chain lookups; safe to cache briefly."""

    async def get_top(self) -> BlockRef: ...

    async def get_key_block(self, height: int) -> BlockRef: ...

    async def list_recent_key_blocks(self, n: int) -> list[BlockRef]: ...


class BalanceSource(Protocol):
    """Live native-coin balance of an account, in human units."""

    async def get_account_balance(self, address: str) -> float: ...
