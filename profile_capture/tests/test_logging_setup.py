from __future__ import annotations

import logging

from profile_capture.logging_setup import SafeExtraFormatter


def _record(**extra: str) -> logging.LogRecord:
    record = logging.LogRecord(
        name="profile_capture.reveal",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="reveal container did not render within %dms",
        args=(2000,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_safe_extra_formatter_fills_missing_fields() -> None:
    formatter = SafeExtraFormatter(fmt="%(message)s stage=%(stage)s status=%(status)s capture_id=%(capture_id)s")

    assert formatter.format(_record()) == "reveal container did not render within 2000ms stage=- status=- capture_id=-"


def test_safe_extra_formatter_keeps_supplied_fields() -> None:
    formatter = SafeExtraFormatter(fmt="%(stage)s %(status)s %(error)s")

    assert formatter.format(_record(stage="reveal", status="timeout")) == "reveal timeout -"
