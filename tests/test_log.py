import logging
import sys

from llm_gateway.log import REDACTED, RedactingFilter, configure_logging, redact


def test_redact_anthropic_keys_and_bearer_tokens():
    text = redact(
        "key sk-ant-REDACTED failed, header Bearer eyJhbGciOi.payload"
    )

    assert "abcdefghijklmnop" not in text
    assert "eyJhbGciOi" not in text
    assert text.count(REDACTED) == 2


def test_redact_key_value_pairs_keeps_field_names():
    text = redact('refresh_token=abc123&grant_type=refresh_token {"access_token": "xyz"}')

    assert "abc123" not in text
    assert "xyz" not in text
    assert "refresh_token=" + REDACTED in text
    assert "grant_type=refresh_token" in text


def test_redact_leaves_plain_text_alone():
    message = "Upstream returned 529 (account=3, attempt=1)"
    assert redact(message) == message


def test_filter_rewrites_formatted_message():
    record = logging.LogRecord(
        "llm_gateway.proxy",
        logging.ERROR,
        __file__,
        10,
        "Request error (key=%s): %s",
        ("sk-ant-REDACTED", "timeout"),
        None,
    )

    assert RedactingFilter().filter(record) is True
    message = record.getMessage()
    assert "sk-ant-api03" not in message
    assert "timeout" in message


def test_filter_redacts_exception_text():
    try:
        raise ValueError("bad token=supersecretvalue")
    except ValueError:
        exc_info = sys.exc_info()

    record = logging.LogRecord(
        "llm_gateway", logging.ERROR, __file__, 1, "failed", None, exc_info
    )
    RedactingFilter().filter(record)

    assert "supersecretvalue" not in record.exc_text


def test_configure_logging_installs_filter_once():
    configure_logging("debug")
    configure_logging("debug")

    root = logging.getLogger()
    for handler in root.handlers:
        filters = [f for f in handler.filters if isinstance(f, RedactingFilter)]
        assert len(filters) == 1
