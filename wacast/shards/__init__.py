"""Recipient shard access: cached per-shard engines + cross-shard resolution."""

from .store import ShardStore  # re-export
from .resolver import (  # re-export
    FanOutStrategy,
    OrderingStrategy,
    SequentialStrategy,
    ShardResolver,
)
