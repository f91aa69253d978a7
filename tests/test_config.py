"""Tests for environment-driven settings."""

import logging

import pytest

from config import Settings


def test_defaults_when_unset(monkeypatch):
    for var in ("NGGATE_UPSTREAM_TIMEOUT", "NGGATE_MAX_CAPTURE_BYTES", "NGGATE_CLASSIFIER_TIMEOUT"):
        monkeypatch.delenv(var, raising=False)
    settings = Settings.from_env()
    assert settings.upstream_timeout == 120.0
    assert settings.max_capture_bytes == 10 * 1024 * 1024
    assert settings.retention_days is None
    assert settings.classifier_enabled is False


def test_numeric_values_are_parsed(monkeypatch):
    monkeypatch.setenv("NGGATE_MAX_BODY_BYTES", "2048")
    monkeypatch.setenv("NGGATE_UPSTREAM_TIMEOUT", "2.5")
    monkeypatch.setenv("NGGATE_RETENTION_DAYS", "7")
    settings = Settings.from_env()
    assert settings.max_body_bytes == 2048
    assert settings.upstream_timeout == 2.5
    assert settings.retention_days == 7


@pytest.mark.parametrize("var,value,field,default", [
    ("NGGATE_MAX_BODY_BYTES", "10MB", "max_body_bytes", 10 * 1024 * 1024),
    ("NGGATE_UPSTREAM_TIMEOUT", "two minutes", "upstream_timeout", 120.0),
    ("NGGATE_RETENTION_DAYS", "30d", "retention_days", None),
])
def test_malformed_number_falls_back_to_default(monkeypatch, caplog, var, value, field, default):
    monkeypatch.setenv(var, value)
    with caplog.at_level(logging.WARNING, logger="nggate.config"):
        settings = Settings.from_env()
    assert getattr(settings, field) == default
    assert var in caplog.text


@pytest.mark.parametrize("value", ["1", "true", "YES", " on "])
def test_classifier_enabled_truthy(monkeypatch, value):
    monkeypatch.setenv("NGGATE_CLASSIFIER_ENABLED", value)
    assert Settings.from_env().classifier_enabled is True
