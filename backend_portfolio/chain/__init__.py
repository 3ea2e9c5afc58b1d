"""
Chain data source boundary and timestamp → block-height resolution.
"""

from backend_portfolio.chain.block_height import BlockHeightResolver, clear_block_caches
from backend_portfolio.chain.client import MiddlewareClient
from backend_portfolio.chain.models import BalanceSource, BlockRef, ChainDataSource

__all__ = [
    "BalanceSource",
    "BlockHeightResolver",
    "BlockRef",
    "ChainDataSource",
    "MiddlewareClient",
    "clear_block_caches",
]
