from __future__ import annotations

import asyncio

import pytest

from ubos.core.config import get_settings
from ubos.services.audit import AuditLogger, AuditRecord


class _RecordingSink:
    def __init__(self, *, delay_s: float = 0.0) -> None:
        self.records: list[AuditRecord] = []
        self._delay_s = delay_s

    async def append(self, record: AuditRecord) -> None:
        if self._delay_s:
            await asyncio.sleep(self._delay_s)
        self.records.append(record)


class _BrokenSink:
    async def append(self, record: AuditRecord) -> None:
        raise ConnectionError("audit store unreachable")


def _record(reason: str = "permission_granted") -> AuditRecord:
    return AuditRecord(entity_type="permission_check", outcome="allowed", reason=reason)


@pytest.mark.asyncio
async def test_log_decision_appends_to_sink() -> None:
    sink = _RecordingSink()
    result = await AuditLogger(sink).log_decision(_record())
    assert result.ok is True
    assert [record.reason for record in sink.records] == ["permission_granted"]


@pytest.mark.asyncio
async def test_sink_failure_is_reported_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    result = await AuditLogger(_BrokenSink()).log_decision(_record())
    assert result.ok is False
    assert "ConnectionError" in (result.error or "")
    assert "audit_event_write_failed" in caplog.text


@pytest.mark.asyncio
async def test_schedule_runs_in_background_and_drain_waits() -> None:
    sink = _RecordingSink(delay_s=0.01)
    audit_logger = AuditLogger(sink)
    for index in range(5):
        audit_logger.schedule(_record(reason=f"r{index}"))
    assert sink.records == []

    await audit_logger.drain()
    assert sorted(record.reason for record in sink.records) == [f"r{index}" for index in range(5)]


@pytest.mark.asyncio
async def test_disabled_audit_skips_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT_ENABLED", "false")
    get_settings.cache_clear()
    sink = _RecordingSink()
    result = await AuditLogger(sink).log_decision(_record())
    assert result.ok is True
    assert sink.records == []
