import logging

from grantkeeper.logging_hardening import SecretRedactionFilter, redact

BCRYPT_HASH = "$2b$12$" + "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0"


def make_record(msg, args=None):
    return logging.LogRecord("grantkeeper.test", logging.INFO, __file__, 1, msg, args, None)


def test_keyword_assignments_are_redacted():
    assert redact("login password=Hunter22 ok") == "login password=[REDACTED] ok"
    assert redact("token: abc123") == "token: [REDACTED]"


def test_json_fields_are_redacted():
    assert redact('{"password": "Str0ngPass!"}') == '{"password": "[REDACTED]"}'


def test_bcrypt_hashes_are_redacted():
    assert len(BCRYPT_HASH) == 60
    assert redact(f"stored {BCRYPT_HASH}") == "stored [REDACTED_HASH]"


def test_plain_text_is_untouched():
    assert redact("Created account alice_01") == "Created account alice_01"


def test_filter_redacts_message_and_args():
    record = make_record("user %s password=Hunter22", ("alice_01",))

    assert SecretRedactionFilter().filter(record) is True
    assert record.getMessage() == "user alice_01 password=[REDACTED]"


def test_filter_redacts_tuple_args():
    record = make_record("stored %s", (BCRYPT_HASH,))

    SecretRedactionFilter().filter(record)

    assert record.getMessage() == "stored [REDACTED_HASH]"


def test_filter_passes_non_string_messages():
    record = make_record(12345)

    assert SecretRedactionFilter().filter(record) is True
    assert record.msg == 12345
