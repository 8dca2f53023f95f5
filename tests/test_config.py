"""Settings and required-variable placeholders."""
import logging

import pytest

from tanam.backend.config import (
    PLACEHOLDER_SUPABASE_ANON_KEY,
    PLACEHOLDER_SUPABASE_URL,
    Settings,
    apply_required_placeholders,
    is_identity_configured,
)


@pytest.mark.timeout(5)
def test_missing_required_variables_get_placeholders(monkeypatch, caplog):
    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    caplog.set_level(logging.ERROR, logger="tanam.backend.config")

    s = apply_required_placeholders(Settings(_env_file=None))

    assert s.supabase_url == PLACEHOLDER_SUPABASE_URL
    assert s.supabase_anon_key == PLACEHOLDER_SUPABASE_ANON_KEY
    assert not is_identity_configured(s)
    messages = " ".join(r.getMessage() for r in caplog.records)
    assert "SUPABASE_URL" in messages
    assert "SUPABASE_ANON_KEY" in messages


@pytest.mark.timeout(5)
def test_only_missing_variable_is_reported(monkeypatch, caplog):
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    caplog.set_level(logging.ERROR, logger="tanam.backend.config")

    s = apply_required_placeholders(Settings(_env_file=None))

    assert s.supabase_url == "https://project.supabase.co"
    messages = " ".join(r.getMessage() for r in caplog.records)
    assert "SUPABASE_ANON_KEY" in messages
    assert "SUPABASE_URL," not in messages


@pytest.mark.timeout(5)
def test_env_overrides_action_urls(monkeypatch):
    monkeypatch.setenv("TOPUP_URL", "https://hooks.test/topup")
    monkeypatch.setenv("RENEWAL_POLL_ATTEMPTS", "3")
    s = Settings(_env_file=None)
    assert s.topup_url == "https://hooks.test/topup"
    assert s.renewal_poll_attempts == 3
    assert s.renewal_poll_interval_seconds == 1.0
