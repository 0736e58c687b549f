from datetime import datetime, timedelta, timezone

import pytest

from llm_gateway.models import (
    AUTH_API_KEY,
    AUTH_OAUTH,
    HEALTH_UNKNOWN,
    ApiKeyCredential,
    ApiKeyPrincipal,
    CapabilityFilter,
    OAuthCredential,
    UpstreamAccount,
    UsageRecord,
    credential_from_dict,
    credential_to_dict,
    hash_api_key,
    mask_secret,
    summarize_records,
)


def test_upstream_account_defaults():
    account = UpstreamAccount(
        id=1, owner_id="u1", credential=ApiKeyCredential(api_key="sk-ant-test-123456")
    )

    assert account.provider == "anthropic"
    assert account.is_active is True
    assert account.priority == 1
    assert account.weight == 100
    assert account.request_count == 0
    assert account.success_count == 0
    assert account.error_count == 0
    assert account.last_used_at is None
    assert account.health_status == HEALTH_UNKNOWN
    assert account.auth_kind == AUTH_API_KEY
    assert account.oauth_expires_at is None


def test_oauth_account_exposes_expiry():
    credential = OAuthCredential(
        access_token="at-1", refresh_token="rt-1", expires_at_ms=5_000
    )
    account = UpstreamAccount(id=2, owner_id="u1", credential=credential)

    assert account.auth_kind == AUTH_OAUTH
    assert account.oauth_expires_at == 5_000
    assert account.is_oauth_expired(at_ms=4_999) is False
    assert account.is_oauth_expired(at_ms=5_000) is True


def test_api_key_account_never_oauth_expired():
    account = UpstreamAccount(id=1, owner_id="u1", credential=ApiKeyCredential("sk-x"))
    assert account.is_oauth_expired(at_ms=10**15) is False


def test_credential_prefix_masks_secret():
    account = UpstreamAccount(
        id=1,
        owner_id="u1",
        credential=ApiKeyCredential(api_key="sk-ant-REDACTED"),
    )

    prefix = account.credential_prefix()
    assert prefix == "sk-ant-a...nop"
    assert "abcdefghijklm" not in prefix


def test_mask_secret_short_values():
    assert mask_secret("") == ""
    assert mask_secret("abcdef") == "abc..."


def test_account_row_round_trip_keeps_credential_kind():
    account = UpstreamAccount(
        id=7,
        owner_id="u1",
        name="primary",
        credential=OAuthCredential(
            access_token="at",
            refresh_token="rt",
            expires_at_ms=123,
            scopes=frozenset({"user:inference", "org:create_api_key"}),
        ),
        success_count=3,
        last_used_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )

    restored = UpstreamAccount.from_row(account.to_row())

    assert restored == account
    assert isinstance(restored.credential, OAuthCredential)


def test_credential_from_dict_rejects_unknown_type():
    with pytest.raises(ValueError, match="Unknown credential type"):
        credential_from_dict({"type": "session_cookie"})


def test_credential_to_dict_rejects_unknown_type():
    with pytest.raises(TypeError):
        credential_to_dict("not-a-credential")  # type: ignore[arg-type]


def test_api_key_credential_base_url_trailing_slash_removed():
    credential = credential_from_dict(
        {"type": "api_key", "api_key": "sk-1", "base_url": "https://proxy.test/"}
    )
    assert isinstance(credential, ApiKeyCredential)
    assert credential.base_url == "https://proxy.test"


def test_principal_expiry_and_permissions():
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    principal = ApiKeyPrincipal(
        id=1, owner_id="u1", key_hash=hash_api_key("gw-key"), expires_at=past
    )

    assert principal.is_expired() is True
    assert principal.has_permission("anthropic.messages") is True
    assert principal.has_permission("admin") is False


def test_principal_without_expiry_never_expires():
    principal = ApiKeyPrincipal(id=1, owner_id="u1", key_hash="h")
    assert principal.is_expired() is False


def test_hash_api_key_is_sha256_hex():
    digest = hash_api_key("gw-key")
    assert len(digest) == 64
    assert digest == hash_api_key("gw-key")
    assert digest != hash_api_key("gw-key-2")


def test_capability_filter_matches_provider_and_kind():
    api_account = UpstreamAccount(id=1, owner_id="u1", credential=ApiKeyCredential("k"))

    assert CapabilityFilter().matches(api_account) is True
    assert CapabilityFilter(auth_kind=AUTH_OAUTH).matches(api_account) is False
    assert CapabilityFilter(provider="gemini").matches(api_account) is False


def test_summarize_records_counts_success_and_errors():
    records = [
        UsageRecord(
            request_id="r1",
            api_key_id=1,
            owner_id="u1",
            model="m",
            status_code=200,
            response_time_ms=100,
            input_tokens=10,
            output_tokens=5,
            cost_usd=0.5,
        ),
        UsageRecord(
            request_id="r2",
            api_key_id=1,
            owner_id="u1",
            model="m",
            status_code=502,
            response_time_ms=300,
        ),
    ]

    summary = summarize_records(records)

    assert summary.total_requests == 2
    assert summary.success_count == 1
    assert summary.error_count == 1
    assert summary.total_tokens == 15
    assert summary.total_cost_usd == pytest.approx(0.5)
    assert summary.average_response_time_ms == pytest.approx(200.0)
