import importlib.util
from pathlib import Path

import pytest
from argon2 import PasswordHasher, Type

from portalauth.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


def _load_script():
    module_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime(reset_runtime_state):
    runtime = get_runtime()
    runtime.hashing._hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    return runtime


class TestBootstrapAdmin:
    @pytest.mark.asyncio
    async def test_creates_admin(self, runtime):
        script = _load_script()
        result = await script.bootstrap_admin("root@inst.example", "Adm1n$ecure")
        assert result["status"] == "created"
        user = runtime.store.get_user(result["user_id"])
        assert user.role == "admin"
        assert user.username == "administration.portal.administrator"

    @pytest.mark.asyncio
    async def test_promotes_existing_user(self, runtime):
        script = _load_script()
        user = await runtime.auth.register(
            email="ana@inst.example",
            password="Abc12345!",
            first_name="Ana",
            last_name="Silva",
            organizational_unit_id=1,
        )
        login = await runtime.auth.login("ana@inst.example", "Abc12345!")
        result = await script.bootstrap_admin("ana@inst.example", "ignored")
        assert result["status"] == "promoted"
        assert runtime.store.get_user(user.id).role == "admin"
        assert await runtime.revocation.is_session_revoked(login.tokens.session.session_id)

        again = await script.bootstrap_admin("ana@inst.example", "ignored")
        assert again["status"] == "already_admin"

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing(self, runtime):
        script = _load_script()
        result = await script.bootstrap_admin("root@inst.example", "Adm1n$ecure", dry_run=True)
        assert result == {"user_id": None, "email": "root@inst.example", "status": "dry_run"}
        assert runtime.store.get_user_by_email("root@inst.example") is None

    def test_weak_password_exits(self):
        script = _load_script()
        with pytest.raises(SystemExit):
            script.main(["--email", "root@inst.example", "--password", "weak"])
