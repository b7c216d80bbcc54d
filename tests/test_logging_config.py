import logging
import unittest

from utils.logging_config import RoundContextFilter, get_logger, logging_context


def _filtered_record() -> logging.LogRecord:
    record = logging.LogRecord("riddle.test", logging.INFO, __file__, 1, "msg", None, None)
    RoundContextFilter().filter(record)
    return record


class LoggingContextTests(unittest.TestCase):
    def test_context_binds_and_restores_identifiers(self) -> None:
        with logging_context(chat_id=123, round_id="abc", player="42"):
            record = _filtered_record()
            self.assertEqual(("123", "abc", "42"), (record.chat_id, record.round_id, record.player))
            with logging_context(round_id="def"):
                inner = _filtered_record()
                self.assertEqual(("123", "def", "42"), (inner.chat_id, inner.round_id, inner.player))
            self.assertEqual("abc", _filtered_record().round_id)

        record = _filtered_record()
        self.assertEqual(("-", "-", "-"), (record.chat_id, record.round_id, record.player))

    def test_filter_keeps_explicit_values(self) -> None:
        record = logging.LogRecord("riddle.test", logging.INFO, __file__, 1, "msg", None, None)
        record.player = "explicit"

        with logging_context(chat_id=7, player="bound"):
            RoundContextFilter().filter(record)

        self.assertEqual("7", record.chat_id)
        self.assertEqual("-", record.round_id)
        self.assertEqual("explicit", record.player)

    def test_get_logger_uses_project_namespace(self) -> None:
        self.assertEqual("riddle.rounds", get_logger("rounds").name)
        self.assertEqual("riddle.judge", get_logger("riddle.judge").name)


if __name__ == "__main__":
    unittest.main()
