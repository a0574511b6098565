"""
test_access.py - Unit tests for the static access controller
"""

from lendpool import AccessController, StaticAccessController, ROLE_ADMIN, ROLE_USER


class TestStaticAccessController:

    def test_implements_protocol(self):
        assert isinstance(StaticAccessController(), AccessController)

    def test_admin_role(self):
        access = StaticAccessController(admins={"governance"})
        assert access.is_authorized("governance", ROLE_ADMIN)
        assert not access.is_authorized("alice", ROLE_ADMIN)

    def test_everyone_is_a_user_without_allow_list(self):
        assert StaticAccessController().is_authorized("anyone", ROLE_USER)

    def test_user_allow_list(self):
        access = StaticAccessController(admins={"governance"}, users={"alice"})
        assert access.is_authorized("alice", ROLE_USER)
        assert access.is_authorized("governance", ROLE_USER)
        assert not access.is_authorized("bob", ROLE_USER)

    def test_unknown_role(self):
        assert not StaticAccessController(admins={"x"}).is_authorized("x", "AUDITOR")

    def test_pause_is_per_pool(self):
        access = StaticAccessController()
        access.pause("A")
        assert access.is_paused("A")
        assert not access.is_paused("B")
        access.unpause("A")
        assert not access.is_paused("A")

    def test_grant_admin(self):
        access = StaticAccessController()
        access.grant_admin("alice")
        assert access.is_authorized("alice", ROLE_ADMIN)
