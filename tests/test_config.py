from datetime import timedelta

import pytest
from pydantic import ValidationError

from portalauth.config import Settings, parse_duration

_KEYS = {
    "access_token_secret": "a" * 40,
    "refresh_token_secret": "b" * 40,
    "reset_token_secret": "c" * 40,
}


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("15m", timedelta(minutes=15)),
            ("7d", timedelta(days=7)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("2w", timedelta(weeks=2)),
            ("500ms", timedelta(milliseconds=500)),
            ("90", timedelta(seconds=90)),
            (30, timedelta(seconds=30)),
            (" 10S ", timedelta(seconds=10)),
        ],
    )
    def test_accepts_known_units(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "7 days", "7x", "m15", "1h 30m", "0", "0s", -5, True, None])
    def test_rejects_unknown_input(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)

    def test_passes_timedelta_through(self):
        assert parse_duration(timedelta(seconds=3)) == timedelta(seconds=3)


class TestSettings:
    def test_defaults_are_parsed(self):
        settings = Settings(**_KEYS)
        assert settings.access_token_ttl == timedelta(minutes=15)
        assert settings.refresh_token_ttl == timedelta(days=7)
        assert settings.reset_token_ttl == timedelta(minutes=30)
        assert settings.reset_request_rate_window == timedelta(minutes=5)
        assert settings.security_question_rate_window == timedelta(minutes=30)

    def test_bad_duration_fails_validation(self):
        with pytest.raises(ValidationError):
            Settings(access_token_ttl="fifteen minutes", **_KEYS)

    def test_zero_leeway_allowed(self):
        settings = Settings(clock_skew_leeway="0", **_KEYS)
        assert settings.clock_skew_leeway == timedelta(0)

    def test_shared_signing_key_rejected(self):
        keys = dict(_KEYS, reset_token_secret=_KEYS["access_token_secret"])
        with pytest.raises(ValidationError, match="distinct"):
            Settings(**keys)

    def test_short_signing_key_rejected(self):
        with pytest.raises(ValidationError, match="at least"):
            Settings(**dict(_KEYS, refresh_token_secret="short"))

    def test_shared_audience_rejected(self):
        with pytest.raises(ValidationError, match="audiences"):
            Settings(refresh_token_audience="portal-system", **_KEYS)

    def test_missing_keys_are_generated_and_persisted(self, tmp_path):
        first = Settings(secrets_dir=str(tmp_path))
        second = Settings(secrets_dir=str(tmp_path))
        assert first.access_token_secret == second.access_token_secret
        assert len({first.access_token_secret, first.refresh_token_secret, first.reset_token_secret}) == 3
        assert (tmp_path / ".reset_token_secret").exists()

    def test_non_positive_rate_limit_rejected(self):
        with pytest.raises(ValidationError):
            Settings(auth_rate_limit=0, **_KEYS)

    def test_domain_and_origin_lists(self):
        settings = Settings(
            allowed_email_domains="Inst.Example, @other.example",
            cors_allow_origins="https://a.example, https://b.example",
            **_KEYS,
        )
        assert settings.allowed_domains == {"inst.example", "other.example"}
        assert settings.cors_origins == ["https://a.example", "https://b.example"]

    def test_from_env_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")
        monkeypatch.setenv("AUTH_RATE_LIMIT", "4")
        settings = Settings.from_env()
        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.auth_rate_limit == 4
