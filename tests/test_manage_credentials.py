"""Tests for the credential housekeeping script."""

import importlib.util
from pathlib import Path

import pytest

from taskdesk.service.runtime import get_runtime
from taskdesk.service.tokens import hash_refresh_token

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage_credentials.py"


@pytest.fixture
def manage():
    spec = importlib.util.spec_from_file_location("manage_credentials", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def logged_in(recording_email):
    runtime = get_runtime()
    runtime.session.email = recording_email
    runtime.session.request_otp("ops@example.com")
    return runtime.session.verify_otp("ops@example.com", recording_email.last_code())


def test_sweep_dry_run_deletes_nothing(manage, logged_in, capsys):
    result = manage.sweep(dry_run=True)

    assert result["status"] == "dry_run"
    assert "[DRY RUN]" in capsys.readouterr().out
    assert len(get_runtime().store.list_otps(logged_in["user"]["id"])) == 1


def test_sweep_reports_counts(manage, logged_in):
    result = manage.sweep()
    assert result == {"status": "swept", "otps": 0, "refresh_tokens": 0}


def test_revoke_all_by_email(manage, logged_in, capsys):
    result = manage.revoke_all("OPS@example.com")

    assert result["status"] == "revoked"
    assert result["revoked"] == 1
    record = get_runtime().store.find_refresh_token_by_hash(
        hash_refresh_token(logged_in["refresh_token"])
    )
    assert record.is_revoked is True
    assert "Revoked 1 refresh tokens" in capsys.readouterr().out


def test_revoke_all_unknown_email(manage):
    assert manage.revoke_all("nobody@example.com")["status"] == "not_found"
