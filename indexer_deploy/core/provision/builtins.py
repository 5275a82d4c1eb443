from __future__ import annotations

from .models import ServiceFamily


def builtin_families() -> list[ServiceFamily]:
    # Node daemons whose RPC/ZMQ sockets are shared with the indexer and its consumers.
    return [
        ServiceFamily(
            name="bitcoin",
            home_directory="/bitcoin",
            owner_user="bitcoin",
            owner_group="bitcoin",
            consumer_identities=["electrs", "mempool", "lnd"],
            description="bitcoin-like node socket directory",
        ),
        ServiceFamily(
            name="elements",
            home_directory="/elements",
            owner_user="elements",
            owner_group="elements",
            consumer_identities=["electrs", "mempool", "peerswap"],
            description="elements-like node socket directory",
        ),
    ]
