"""
Connection Registry
===================

Tracks every open connection and the camera role it declared.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .logger import logger


class Role(Enum):
    """Camera role a connection may declare."""
    FRONT = "front"
    BACK = "back"

    @classmethod
    def parse(cls, value: Union[str, "Role", None]) -> Optional["Role"]:
        """Return the matching Role, or None for anything unrecognized."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class ConnectionRegistry:
    """
    Maps live connections to their declared role.

    Connections are opaque; any hashable transport endpoint works. A
    connection is unassigned (role None) until its first valid registration.
    A later registration on the same connection overwrites the earlier one.
    """

    def __init__(self):
        self._roles: Dict[Any, Optional[Role]] = {}

    def add(self, connection: Any) -> None:
        """Track a newly opened, unassigned connection."""
        self._roles.setdefault(connection, None)

    def register(self, connection: Any, role: Union[str, Role, None]) -> bool:
        """
        Assign a role to a connection.

        Returns:
            True if the role was accepted, False if it was not front/back
        """
        parsed = Role.parse(role)
        if parsed is None:
            logger.debug(f"Ignoring registration with unknown role {role!r}")
            return False

        previous = self._roles.get(connection)
        if previous is not None and previous != parsed:
            logger.warning(f"Connection re-registered: {previous.value} -> {parsed.value}")
        self._roles[connection] = parsed
        return True

    def lookup(self, connection: Any) -> Optional[Role]:
        """Role of the connection, or None when unassigned or unknown."""
        return self._roles.get(connection)

    def remove(self, connection: Any) -> Optional[Role]:
        """Forget a connection; returns the role it had, if any."""
        return self._roles.pop(connection, None)

    def snapshot(self) -> List[Any]:
        """Copy of all open connections, safe to iterate while others register."""
        return list(self._roles)

    def count(self, role: Optional[Role] = None) -> int:
        """Number of connections holding the given role (all when None)."""
        if role is None:
            return len(self._roles)
        return sum(1 for r in self._roles.values() if r is role)

    def __len__(self) -> int:
        return len(self._roles)

    def __contains__(self, connection: Any) -> bool:
        return connection in self._roles
