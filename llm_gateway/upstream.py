"""Provider-specific upstream request building."""

from typing import Any, Dict

import httpx

from llm_gateway.models import (
    DEFAULT_ANTHROPIC_BASE_URL,
    ApiKeyCredential,
    Credential,
    OAuthCredential,
    UpstreamAccount,
)

ANTHROPIC_VERSION = "2023-06-01"
OAUTH_BETA_FEATURES = (
    "claude-code-20250219,"
    "oauth-2025-04-20,"
    "interleaved-thinking-2025-05-14,"
    "fine-grained-tool-streaming-2025-05-14"
)
OAUTH_USER_AGENT = "claude-cli/1.0.57 (external, cli)"

MESSAGES_FIELDS = frozenset(
    {
        "model",
        "messages",
        "max_tokens",
        "temperature",
        "top_p",
        "top_k",
        "stream",
        "system",
        "stop_sequences",
        "tools",
        "tool_choice",
        "metadata",
    }
)


def build_auth_headers(credential: Credential, stream: bool) -> Dict[str, str]:
    headers = {
        "anthropic-version": ANTHROPIC_VERSION,
        "content-type": "application/json",
    }
    if isinstance(credential, ApiKeyCredential):
        headers["x-api-key"] = credential.api_key
    elif isinstance(credential, OAuthCredential):
        headers.update(
            {
                "authorization": f"Bearer {credential.access_token}",
                "anthropic-beta": OAUTH_BETA_FEATURES,
                "x-app": "cli",
                "user-agent": OAUTH_USER_AGENT,
                "anthropic-dangerous-direct-browser-access": "true",
            }
        )
    else:
        raise TypeError(f"Unsupported credential type: {type(credential).__name__}")

    if stream:
        headers["accept"] = "text/event-stream"
    return headers


def messages_url(credential: Credential, oauth_base_url: str) -> str:
    if isinstance(credential, ApiKeyCredential):
        return f"{credential.base_url.rstrip('/')}/v1/messages"
    if isinstance(credential, OAuthCredential):
        return f"{oauth_base_url.rstrip('/')}/v1/messages"
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")


def filter_body(body: Dict[str, Any], stream: bool) -> Dict[str, Any]:
    """Keep only recognised Messages fields, with ``stream`` matching the path served."""
    outbound = {key: value for key, value in body.items() if key in MESSAGES_FIELDS}
    outbound["stream"] = stream
    return outbound


def build_upstream_request(
    client: httpx.AsyncClient,
    account: UpstreamAccount,
    body: Dict[str, Any],
    stream: bool,
    oauth_base_url: str = DEFAULT_ANTHROPIC_BASE_URL,
) -> httpx.Request:
    credential = account.credential
    return client.build_request(
        "POST",
        messages_url(credential, oauth_base_url),
        headers=build_auth_headers(credential, stream),
        json=filter_body(body, stream),
    )
