import uuid

import pytest

from concierge.core.exceptions import PermissionDeniedError
from concierge.core.permissions import Actor, has_role, require_any_role, require_role
from concierge.db.enums import Role


def _actor(role):
    return Actor(user_id=uuid.uuid4(), role=role)


def test_role_ranking():
    assert has_role(Role.ADMIN, Role.REVIEWER)
    assert has_role("doctor", "reviewer")
    assert not has_role(Role.STAFF, Role.REVIEWER)
    assert not has_role("janitor", Role.STAFF)


def test_require_role_denies_lower_rank():
    require_role(_actor(Role.DOCTOR), Role.REVIEWER, "review messages")
    with pytest.raises(PermissionDeniedError, match="Role staff cannot review messages"):
        require_role(_actor(Role.STAFF), Role.REVIEWER, "review messages")


def test_unknown_role_is_denied_not_crashed():
    with pytest.raises(PermissionDeniedError, match="Role janitor cannot"):
        require_role(_actor("janitor"), Role.STAFF, "view messages")
    with pytest.raises(PermissionDeniedError, match="Only auditor, admin"):
        require_any_role(_actor("janitor"), (Role.AUDITOR, Role.ADMIN), "export audit logs")


def test_require_any_role_accepts_listed_roles():
    require_any_role(_actor(Role.AUDITOR), (Role.AUDITOR, Role.ADMIN), "export audit logs")
    require_any_role(_actor("admin"), (Role.AUDITOR, Role.ADMIN), "export audit logs")
    with pytest.raises(PermissionDeniedError):
        require_any_role(_actor(Role.DOCTOR), (Role.AUDITOR, Role.ADMIN), "export audit logs")
