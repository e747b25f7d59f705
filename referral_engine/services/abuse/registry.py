"""
Block registry: lookup of a user's active referrer Block.
"""

from typing import Dict, List, Optional, Protocol

from referral_engine.services.referrals.models import Block


class BlockRegistry(Protocol):
    async def get_active_block(self, user_id: str) -> Optional[Block]:
        ...

    async def save_block(self, block: Block) -> None:
        ...


class InMemoryBlockRegistry:
    def __init__(self):
        self._blocks: Dict[str, Block] = {}
        self.history: List[Block] = []

    async def get_active_block(self, user_id: str) -> Optional[Block]:
        block = self._blocks.get(str(user_id))
        if block is not None and block.active:
            return block
        return None

    async def save_block(self, block: Block) -> None:
        if block.id not in {b.id for b in self.history}:
            self.history.append(block)
        if block.active:
            self._blocks[block.user_id] = block
        elif self._blocks.get(block.user_id) is block:
            del self._blocks[block.user_id]
