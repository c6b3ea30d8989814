"""Test helpers for the hedgekeeper test suite"""

from tests.helpers.fakes import FakeClock, RecordingEvent

__all__ = [
    "FakeClock",
    "RecordingEvent",
]
