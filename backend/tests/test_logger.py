import json
import logging

from mockprep.core.logger import log_event
from mockprep.session.models import EndReason


def _events(caplog) -> list[dict]:
    return [json.loads(record.getMessage()) for record in caplog.records if record.name == "mockprep.events"]


def test_log_event_redacts_candidate_text(caplog):
    caplog.set_level(logging.INFO, logger="mockprep.events")

    log_event(
        "session",
        "ending",
        "s-1",
        reason=EndReason.TIME_EXPIRED,
        transcript="I would use a queue here",
        answers=[{"question_index": 0, "code_buffer": "print('hi')"}],
    )

    event = _events(caplog)[-1]
    assert event["component"] == "session"
    assert event["session_id"] == "s-1"
    assert event["reason"] == "time_expired"
    assert event["transcript"] == {"redacted": True, "length": 24, "words": 6}
    assert event["answers"][0]["question_index"] == 0
    assert event["answers"][0]["code_buffer"]["redacted"] is True


def test_log_event_respects_level(caplog):
    caplog.set_level(logging.WARNING, logger="mockprep.events")

    log_event("ledger", "debit", "", user_id="u1")
    log_event("ledger", "debit_rejected", "", level=logging.WARNING, user_id="u1", remaining=0)

    assert [event["event"] for event in _events(caplog)] == ["debit_rejected"]
