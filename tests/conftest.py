import os

import pytest

os.environ.setdefault("MQTT_DISABLED", "1")
os.environ.setdefault("PG_HOST", "localhost")
os.environ.setdefault("PG_DB", "fallhelp_test")
os.environ.setdefault("PG_PASS", "fallhelp_test")
os.environ.setdefault("PG_CONNECT_ATTEMPTS", "1")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from fallhelp.shared.sampled_logger import SampledLogger


class RecordingSampledLogger(SampledLogger):
    """SampledLogger that keeps every drop it was asked to log."""

    def __init__(self):
        super().__init__(configs={}, start_thread=False)
        self.records = []

    def log(self, event_type, message, level=30, extra=None):
        self.records.append((event_type, message, extra))
        return super().log(event_type, message, level=level, extra=extra)

    def types(self):
        return [r[0] for r in self.records]


@pytest.fixture
def sampled():
    return RecordingSampledLogger()
