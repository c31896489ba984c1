import logging

from deploy_agent.utils.logging import SecretRedactingFilter


def _record(msg, *args):
    return logging.LogRecord("deploy_agent", logging.INFO, __file__, 1, msg, args, None)


def test_registered_secret_is_masked_in_formatted_message():
    redactor = SecretRedactingFilter()
    redactor.register("s3cr3t-passphrase")
    record = _record("connecting with %s to %s", "s3cr3t-passphrase", "web1")

    assert redactor.filter(record)
    assert record.getMessage() == "connecting with *** to web1"


def test_short_values_are_not_registered():
    redactor = SecretRedactingFilter()
    redactor.register("ab")
    redactor.register(None)
    record = _record("about abc")

    redactor.filter(record)
    assert record.getMessage() == "about abc"


def test_unrelated_records_keep_their_args():
    redactor = SecretRedactingFilter()
    redactor.register("token-value")
    record = _record("step %d of %d", 1, 3)

    redactor.filter(record)
    assert record.args == (1, 3)
