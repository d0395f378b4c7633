"""
User roles enumeration.

Defines the role types for the cooperative management system.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Cooperative administrator with system-level access
        ZONE_LEADER: Leads a zone made of several units
        UNIT_LEADER: Leads a unit of members
        MEMBER: Cooperative member (default role)
    """
    ADMIN = "ADMIN"
    ZONE_LEADER = "ZONE_LEADER"
    UNIT_LEADER = "UNIT_LEADER"
    MEMBER = "MEMBER"
