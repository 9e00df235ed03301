import pytest

from canteen.errors import ConflictError, NotFoundError, PreconditionFailedError
from canteen.models import Role
from canteen.services import role_service


class TestRename:
    def test_rename_custom_role(self, theater):
        role = role_service.create_role(theater.id, "Usher")

        renamed = role_service.rename_role(theater.id, role.id, "Floor Staff")

        assert renamed.name == "Floor Staff"
        assert renamed.name_key == "floor staff"

    def test_rename_collision_is_case_insensitive(self, theater):
        role_service.create_role(theater.id, "Usher")
        other = role_service.create_role(theater.id, "Cashier")

        with pytest.raises(ConflictError):
            role_service.rename_role(theater.id, other.id, "USHER")

    def test_default_roles_keep_their_name(self, theater):
        admin = Role.query.filter_by(theater_id=theater.id, name_key="admin").one()

        with pytest.raises(PreconditionFailedError):
            role_service.rename_role(theater.id, admin.id, "Boss")

    def test_cannot_rename_another_theaters_role(self, theater, other_theater):
        foreign = role_service.create_role(other_theater.id, "Usher")

        with pytest.raises(NotFoundError):
            role_service.rename_role(theater.id, foreign.id, "Mine now")


def test_default_roles_are_idempotent(theater):
    before = {r.name_key for r in role_service.list_roles(theater.id)}
    role_service.create_default_roles(theater.id)

    assert {r.name_key for r in role_service.list_roles(theater.id)} == before
    assert {"admin", "kiosk"} <= before
