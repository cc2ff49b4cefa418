import io
import logging
import unittest

from scanner_config import ScannerConfig
from scanner_logging import (
    LOGGER_NAME,
    SafeFormatter,
    SecretFilter,
    TRACE_ID,
    TraceContextFilter,
    debug_if,
    new_trace_id,
    redact,
    setup_logging,
)


class TestRedaction(unittest.TestCase):
    def test_webhook_token_hidden(self):
        out = redact("posting to https://discord.com/api/webhooks/123456/s3cr3t-Token_x")
        self.assertIn("https://discord.com/api/webhooks/123456/[REDACTED]", out)
        self.assertNotIn("s3cr3t", out)

    def test_master_key_and_redis_password_hidden(self):
        self.assertNotIn("abc123", redact("X-Master-Key: abc123"))
        self.assertEqual(redact("redis://user:pw@host:6379/0"), "redis://[REDACTED]@host:6379/0")


class TestHandlerPipeline(unittest.TestCase):
    def make_logger(self):
        stream = io.StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(SafeFormatter("[%(trace_id)s] %(message)s"))
        handler.addFilter(SecretFilter())
        handler.addFilter(TraceContextFilter())
        logger = logging.getLogger("kiwi_scanner.test_pipeline")
        logger.handlers = [handler]
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        return logger, stream

    def test_trace_id_and_redaction(self):
        logger, stream = self.make_logger()
        token = TRACE_ID.set("")
        try:
            trace = new_trace_id()
            logger.info("calling %s", "https://discord.com/api/webhooks/1/secret")
        finally:
            TRACE_ID.reset(token)
        line = stream.getvalue()
        self.assertTrue(line.startswith(f"[{trace}]"))
        self.assertNotIn("secret", line)

    def test_debug_if_is_lazy(self):
        logger, stream = self.make_logger()
        calls = []

        def msg():
            calls.append(1)
            return "expensive"

        debug_if(False, logger, msg)
        self.assertEqual(calls, [])
        debug_if(True, logger, msg)
        self.assertEqual(calls, [1])
        self.assertIn("expensive", stream.getvalue())


class TestSetupLogging(unittest.TestCase):
    def test_levels(self):
        self.assertEqual(setup_logging(ScannerConfig(LOG_LEVEL="warning")).level, logging.WARNING)
        logger = setup_logging(ScannerConfig(DEBUG_MODE=True))
        self.assertEqual(logger.name, LOGGER_NAME)
        self.assertEqual(logger.level, logging.DEBUG)
        self.assertEqual(len(logger.handlers), 1)


if __name__ == "__main__":
    unittest.main()
