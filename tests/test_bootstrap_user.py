import argparse
import importlib.util
from pathlib import Path

import pytest

from vaultsync.service.errors import RegistrationClosedError
from vaultsync.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_user.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_user", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _args(**overrides) -> argparse.Namespace:
    values = {
        "email": "Owner@Example.com",
        "name": None,
        "master_password_hash": "hash==",
        "key": "2.iv|data|mac",
        "private_key": "2.iv|pk|mac",
        "public_key": "cHVi",
        "kdf": 0,
        "kdf_iterations": 600000,
        "dry_run": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


class TestBootstrapUser:
    def test_registers_first_user(self, bootstrap):
        result = bootstrap.bootstrap_user(_args())
        assert result["status"] == "created"
        assert get_runtime().store.get_user_by_email("owner@example.com") is not None

    def test_dry_run_writes_nothing(self, bootstrap):
        result = bootstrap.bootstrap_user(_args(dry_run=True))
        assert result["status"] == "dry_run"
        assert get_runtime().store.count_users() == 0

    def test_closed_after_first_user(self, bootstrap):
        bootstrap.bootstrap_user(_args())
        result = bootstrap.bootstrap_user(_args(email="second@example.com"))
        assert result["status"] == "closed"
        with pytest.raises(RegistrationClosedError):
            get_runtime().auth.register_first_user(
                get_runtime().store.get_user_by_email("owner@example.com")
            )
