from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from .config import BridgeConfig
from .connection import BridgeConnection


@dataclass
class BridgeContext:
    """Session state shared explicitly between bridge components.

    Owned by ``BridgeController``; valid for one connection only.
    """

    config: BridgeConfig
    connection: BridgeConnection
    handles: dict[UUID, int] = field(default_factory=dict)

    @property
    def tx_handle(self) -> int:
        """Handle of the transmit characteristic.

        Raises:
            KeyError: The transmit UUID has not been resolved yet.
        """
        return self.handles[self.config.tx_uuid]
