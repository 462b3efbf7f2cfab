"""Characteristic listing for troubleshooting a peripheral's UUID layout."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, TextIO
from uuid import UUID

from .config import BridgeConfig
from .errors import BridgeError
from .transport import Characteristic, GattLink

logger = logging.getLogger(__name__)


def describe_characteristics(
    characteristics: Iterable[Characteristic], config: BridgeConfig
) -> list[str]:
    """Format discovered characteristics, marking the ones the bridge uses."""
    lines = []
    for char in sorted(characteristics, key=lambda c: c.handle):
        roles = []
        if char.uuid == config.tx_uuid:
            roles.append("tx")
        if char.uuid in config.rx_uuids:
            roles.append("rx")
        if not roles and char.uuid in config.required_uuids:
            roles.append("required")
        props = ",".join(char.properties) or "-"
        role = f"  <- {'/'.join(roles)}" if roles else ""
        lines.append(f"0x{char.handle:04x}  {char.uuid}  [{props}]{role}")
    return lines


def missing_uuids(
    characteristics: Iterable[Characteristic], config: BridgeConfig
) -> list[UUID]:
    """Required UUIDs with no usable handle among ``characteristics``."""
    found = {c.uuid for c in characteristics if c.handle != 0}
    return [u for u in config.required_uuids if u not in found]


async def list_characteristics(link: GattLink, config: BridgeConfig, out: TextIO) -> int:
    """Connect, print the peripheral's characteristics, disconnect.

    Returns:
        0 if every required UUID is present, 1 otherwise.
    """
    await link.connect()
    try:
        characteristics = await link.discover()
    finally:
        await link.disconnect()

    for line in describe_characteristics(characteristics, config):
        print(line, file=out)
    missing = missing_uuids(characteristics, config)
    for uuid in missing:
        logger.error("Required characteristic %s not found", uuid)
    return 1 if missing else 0


def run_listing(link: GattLink, config: BridgeConfig, out: TextIO) -> int:
    """Synchronous wrapper around ``list_characteristics``; 1 on connect or discovery failure."""
    try:
        return asyncio.run(list_characteristics(link, config, out))
    except BridgeError as e:
        logger.error("%s", e)
        return 1
