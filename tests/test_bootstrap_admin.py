import pytest

from medauth.service.runtime import get_runtime
from medauth.storage.models import Role
from scripts.bootstrap_admin import bootstrap_admin

PASSWORD = "Adm1n!Passw0rd"


def test_creates_admin_account():
    result = bootstrap_admin("Admin@Hospital.example", PASSWORD)

    assert result["status"] == "created"
    account = get_runtime().store.get_account(result["user_id"])
    assert account.email == "admin@hospital.example"
    assert account.role == Role.ADMIN
    assert get_runtime().hasher.verify(PASSWORD, account.password_hash)


def test_promotes_existing_account():
    runtime = get_runtime()
    existing = runtime.store.create_account("nurse@hospital.example", "hash", role=Role.NURSE)

    result = bootstrap_admin("nurse@hospital.example", PASSWORD)

    assert result == {"user_id": existing.id, "email": "nurse@hospital.example", "status": "promoted"}
    assert runtime.store.get_account(existing.id).role == Role.ADMIN
    assert bootstrap_admin("nurse@hospital.example", PASSWORD)["status"] == "already_admin"


def test_dry_run_changes_nothing():
    result = bootstrap_admin("admin@hospital.example", PASSWORD, dry_run=True)

    assert result["status"] == "dry_run"
    assert get_runtime().store.count_accounts() == 0


def test_weak_password_rejected():
    with pytest.raises(ValueError, match="uppercase"):
        bootstrap_admin("admin@hospital.example", "weakpass1!")
