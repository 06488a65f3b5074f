"""
Unit tests -- settings defaults, environment overrides and timeout invariants.
"""
import pytest
from pydantic import ValidationError

from whatcar.core.config import Settings


def test_defaults():
    s = Settings(_env_file=None)
    assert s.odata_path_prefix == "/odata/"
    assert s.odata_attempt_timeout_seconds < s.odata_total_timeout_seconds
    assert s.odata_breaker_sampling_seconds >= 2 * s.odata_attempt_timeout_seconds
    assert s.schema_cache_key == "SchemaSummary"
    assert s.schema_cache_ttl_seconds == 7200
    assert s.llm_cache_ttl_seconds == 3600


def test_env_override(monkeypatch):
    monkeypatch.setenv("ALLOWED_ENTITY_SETS", '["Vehicles"]')
    monkeypatch.setenv("ODATA_BASE_URL", "http://odata.internal:8080")
    s = Settings(_env_file=None)
    assert s.allowed_entity_sets == ["Vehicles"]
    assert s.odata_base_url == "http://odata.internal:8080"


def test_attempt_timeout_must_be_below_total():
    with pytest.raises(ValidationError, match="shorter"):
        Settings(_env_file=None, odata_attempt_timeout_seconds=120, odata_total_timeout_seconds=120)


def test_breaker_window_must_cover_two_attempts():
    with pytest.raises(ValidationError, match="twice"):
        Settings(
            _env_file=None,
            odata_attempt_timeout_seconds=30,
            odata_total_timeout_seconds=60,
            odata_breaker_sampling_seconds=45,
        )


@pytest.mark.parametrize("allowed", [[], [""], ["  "]])
def test_allowlist_must_not_be_empty(allowed):
    with pytest.raises(ValidationError, match="at least one entity set"):
        Settings(_env_file=None, allowed_entity_sets=allowed)
