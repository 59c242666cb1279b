"""Unit tests for the send_digest.py command line entry point."""

import unittest
from datetime import datetime
from unittest.mock import patch

import pytz

import send_digest
from tests.fixtures.mock_helpers import (
    VALID_TOKEN,
    FixedClock,
    create_mock_generator,
    create_test_context,
)


class TestParseAt(unittest.TestCase):
    def test_naive_time_is_utc(self):
        self.assertEqual(send_digest.parse_at("2026-10-18T07:00:00"), datetime(2026, 10, 18, 7, tzinfo=pytz.utc))

    def test_offset_is_converted(self):
        self.assertEqual(
            send_digest.parse_at("2026-10-18T14:00:00+07:00"),
            datetime(2026, 10, 18, 7, tzinfo=pytz.utc),
        )


@patch("send_digest.configure_logging")
@patch("send_digest.is_generator_configured", return_value=True)
class TestMain(unittest.TestCase):
    def setUp(self):
        self.clock = FixedClock()
        self.clock.set(6, 0)
        self.context = create_test_context(clock=self.clock)

    def run_main(self, argv):
        with patch("send_digest.build_context", return_value=self.context):
            return send_digest.main(argv)

    def test_tick_for_given_time(self, *_):
        self.context.recipients.save("r1", {"enabled": True, "push_token": VALID_TOKEN})
        self.clock.set(7, 0)

        self.assertEqual(self.run_main(["--at", "2026-10-18T07:00:00"]), 0)
        self.assertEqual(len(self.context.history.list("r1")), 1)

    def test_failed_generation_exits_nonzero(self, *_):
        self.context.pipeline.generator = create_mock_generator(error="provider down")
        self.context.recipients.save("r1", {"enabled": True, "push_token": VALID_TOKEN})

        self.assertEqual(self.run_main(["--at", "2026-10-18T07:00:00"]), 1)

    def test_manual_topic(self, *_):
        self.assertEqual(self.run_main(["--topic", "Gaming", "--recipient", "cli-user"]), 0)
        self.assertEqual(self.context.history.latest("cli-user").topic, "Gaming")

    def test_not_configured(self, mock_configured, _):
        mock_configured.return_value = False
        self.assertEqual(send_digest.main([]), 1)


if __name__ == "__main__":
    unittest.main()
