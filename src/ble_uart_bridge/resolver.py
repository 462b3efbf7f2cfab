"""Resolve characteristic UUIDs to session handles."""

from __future__ import annotations

import logging
from typing import Iterable
from uuid import UUID

from .connection import BridgeConnection
from .errors import CharacteristicNotFound, DiscoveryError, LinkClosedError

logger = logging.getLogger(__name__)

INVALID_HANDLE = 0x0000


class CharacteristicResolver:
    """Map the UUIDs a bridge needs onto the handles of the current connection.

    Attributes:
        invalid: UUIDs from the last ``resolve`` that were discovered with the
            reserved handle 0x0000. They never appear in the returned mapping.
    """

    def __init__(self) -> None:
        self.invalid: set[UUID] = set()

    async def resolve(
        self, connection: BridgeConnection, required_uuids: Iterable[UUID]
    ) -> dict[UUID, int]:
        """Run discovery once and return handles for the requested UUIDs.

        Matching compares 128-bit UUID values, so textual differences in case or
        short/long form do not matter. The first valid entry for a UUID wins.
        Only found entries are returned. The caller checks completeness
        with ``require_handles``.

        Raises:
            DiscoveryError: The discovery call itself failed.
        """
        wanted = set(required_uuids)
        self.invalid = set()

        try:
            characteristics = await connection.discover()
        except DiscoveryError:
            raise
        except LinkClosedError as e:
            raise DiscoveryError(f"Characteristic discovery failed: {e}") from e

        resolved: dict[UUID, int] = {}
        for char in characteristics:
            if char.uuid not in wanted:
                continue
            if char.handle == INVALID_HANDLE:
                logger.warning("Characteristic %s discovered with handle 0x0000", char.uuid)
                self.invalid.add(char.uuid)
                continue
            if char.uuid in resolved:
                logger.debug(
                    "Duplicate characteristic %s at handle 0x%04x ignored",
                    char.uuid,
                    char.handle,
                )
                continue
            resolved[char.uuid] = char.handle
            logger.info("Resolved %s -> handle 0x%04x", char.uuid, char.handle)

        # A later valid entry supersedes an earlier invalid one
        self.invalid.difference_update(resolved)
        return resolved


def require_handles(
    resolved: dict[UUID, int],
    required_uuids: Iterable[UUID],
    invalid: Iterable[UUID] = (),
) -> None:
    """Raise ``CharacteristicNotFound`` for the first required UUID not resolved."""
    invalid_set = set(invalid)
    for uuid in required_uuids:
        if uuid not in resolved:
            raise CharacteristicNotFound(uuid, invalid_handle=uuid in invalid_set)
