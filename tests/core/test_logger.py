from loguru import logger

from app.core.logger import REDACTED, redact, setup_logger


def test_bearer_tokens_are_masked():
    assert redact("Authorization: Bearer abc.def-123") == f"Authorization: Bearer {REDACTED}"


def test_query_tokens_are_masked():
    url = "https://apis.garmin.com/wellness-api/rest/activityFile?id=42&token=s3cr3t&x=1"

    assert redact(url) == f"https://apis.garmin.com/wellness-api/rest/activityFile?id=42&token={REDACTED}&x=1"


def test_token_payload_values_are_masked():
    text = "{'access_token': 'abc', 'refresh_token': 'def', 'expires_in': 3600}"

    masked = redact(text)

    assert "abc" not in masked
    assert "def" not in masked
    assert "3600" in masked


def test_plain_messages_are_untouched():
    message = "[GARMIN_WEBHOOK] Received 2 notification(s) from 10.0.0.1"

    assert redact(message) == message


def test_file_sink_receives_redacted_messages(tmp_path):
    log_file = tmp_path / "logs" / "ridesync.log"
    setup_logger(level="DEBUG", log_file=str(log_file))
    try:
        logger.info("Downloading https://example.test/file?token=s3cr3t")
        logger.complete()
    finally:
        setup_logger(level="INFO")

    content = log_file.read_text()
    assert "s3cr3t" not in content
    assert f"token={REDACTED}" in content
