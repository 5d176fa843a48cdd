"""WireGuard key material for server connections."""

import logging
from typing import Awaitable, Callable

from ..vpn.controller import generate_key_pair
from .storage import DataStore, WireGuardKeyPair

logger = logging.getLogger(__name__)


class WireGuardKeyProvider:
    """Hand out the target's stored key pair, making one when needed.

    A renewed session asks for a new pair, so the server issues a
    configuration for a key it has never seen.
    """

    def __init__(
        self,
        data_store: DataStore,
        generate: Callable[[], Awaitable[tuple[str, str]]] = generate_key_pair,
    ):
        self.data_store = data_store
        self.generate = generate

    async def __call__(self, regenerate: bool) -> tuple[str, str]:
        key_pair = None if regenerate else self.data_store.load_key_pair()
        if key_pair is None:
            private_key, public_key = await self.generate()
            key_pair = WireGuardKeyPair(private_key=private_key, public_key=public_key)
            self.data_store.save_key_pair(key_pair)
            logger.info("Generated WireGuard key pair %s", key_pair.public_key)
        return key_pair.private_key, key_pair.public_key
