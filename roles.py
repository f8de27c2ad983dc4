"""
Role hierarchy and the action -> minimum role table.

Roles form a strict total order. Every permission check in the code base goes
through has_min_role(), so a new role only has to be placed in the enum.
"""
from enum import Enum, IntEnum
from typing import Union


class Role(IntEnum):
    VIEWER = 0
    MEMBER = 1
    MANAGER = 2
    ADMIN = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union['Role', str]) -> 'Role':
        """Accept a Role or its lowercase name ('viewer', 'admin', ...)"""
        if isinstance(value, Role):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                pass
        raise ValueError(f"Unknown role: {value!r}")


ROLE_NAMES = tuple(role.label for role in Role)


class Action(Enum):
    READ = "read"
    MANAGE_DEPARTMENTS = "manage_departments"
    MANAGE_QUESTIONNAIRES = "manage_questionnaires"
    MANAGE_ASSESSMENTS = "manage_assessments"
    UPDATE_ORGANIZATION = "update_organization"
    DELETE_ORGANIZATION = "delete_organization"
    MANAGE_MEMBERS = "manage_members"
    READ_AUDIT_LOG = "read_audit_log"


MINIMUM_ROLE = {
    Action.READ: Role.VIEWER,
    Action.MANAGE_DEPARTMENTS: Role.MANAGER,
    Action.MANAGE_QUESTIONNAIRES: Role.MANAGER,
    Action.MANAGE_ASSESSMENTS: Role.MANAGER,
    Action.UPDATE_ORGANIZATION: Role.ADMIN,
    Action.DELETE_ORGANIZATION: Role.ADMIN,
    Action.MANAGE_MEMBERS: Role.ADMIN,
    Action.READ_AUDIT_LOG: Role.ADMIN,
}


def role_rank(role: Union[Role, str]) -> int:
    return int(Role.parse(role))


def has_min_role(actual: Union[Role, str], required: Union[Role, str]) -> bool:
    """The single role comparison used by every policy check."""
    return role_rank(actual) >= role_rank(required)


def required_role(action: Action) -> Role:
    return MINIMUM_ROLE[action]
