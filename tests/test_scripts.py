import importlib.util
from pathlib import Path

import pytest

from sessionauth.service.errors import ValidationError
from sessionauth.service.runtime import get_runtime

SCRIPTS = Path(__file__).resolve().parent.parent / "scripts"


def _load(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    def test_creates_verified_admin(self):
        bootstrap = _load("bootstrap_admin")
        result = bootstrap.bootstrap_admin("Root@Example.com", "Adm1nPassword")
        assert result["status"] == "created"
        user = get_runtime().store.get_user(result["user_id"])
        assert user.role == "admin"
        assert user.email_verified is True
        assert get_runtime().verifier.check_password(user.id, "Adm1nPassword")

    def test_promotes_existing_user(self):
        bootstrap = _load("bootstrap_admin")
        store = get_runtime().store
        user = store.create_user("someone@example.com", "hash", email_verified=True)
        assert bootstrap.bootstrap_admin("someone@example.com", "Adm1nPassword")["status"] == "promoted"
        assert store.get_user(user.id).role == "admin"
        assert bootstrap.bootstrap_admin("someone@example.com", "Adm1nPassword")["status"] == "already_admin"

    def test_dry_run_changes_nothing(self):
        bootstrap = _load("bootstrap_admin")
        result = bootstrap.bootstrap_admin("new@example.com", "Adm1nPassword", dry_run=True)
        assert result == {"user_id": None, "email": "new@example.com", "status": "dry_run"}
        assert get_runtime().store.get_user_by_email("new@example.com") is None

    def test_weak_password_is_rejected(self):
        bootstrap = _load("bootstrap_admin")
        with pytest.raises(ValidationError):
            bootstrap.bootstrap_admin("root@example.com", "weak")


def test_migration_files_are_ordered():
    migrate = _load("migrate")
    files = migrate.migration_files()
    assert files
    assert [f.name for f in files] == sorted(f.name for f in files)
    assert files[0].name == "001_auth_schema.sql"
