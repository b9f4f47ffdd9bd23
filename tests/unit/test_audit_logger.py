"""Tests for the audit logger."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

from cnchannels.audit.logger import AuditLogger, validate_audit_chain
from cnchannels.models import AuditEventType, Provider
from tests.conftest import make_audit_event


def test_log_appends_json_line(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    logger.log(make_audit_event(provider=Provider.WECOM, account_id="default"))

    lines = log_file.read_text().strip().split("\n")
    assert len(lines) == 1
    parsed = json.loads(lines[0])
    assert parsed["event_type"] == "webhook_rejected"
    assert parsed["provider"] == "wecom"
    assert parsed["risk_level"] == "high"


def test_log_creates_file_if_missing(tmp_path: Path) -> None:
    log_file = tmp_path / "subdir" / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event())
    assert log_file.exists()


def test_log_keeps_non_ascii_details(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(
        make_audit_event(event_type=AuditEventType.DM_BLOCKED, details={"sender": "张三"}),
    )
    assert "张三" in log_file.read_text(encoding="utf-8")


def test_timestamps_are_iso8601(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event())
    assert "T" in json.loads(log_file.read_text().strip())["timestamp"]


# --- Rotation tests ---


def test_rotation_triggers_at_threshold(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file), max_bytes=100, backup_count=3)
    for i in range(20):
        logger.log(make_audit_event(action=f"event-{i}"))
    assert (tmp_path / "audit.jsonl.1").exists()
    assert not (tmp_path / "audit.jsonl.4").exists()


def test_rotated_files_each_hold_a_valid_chain(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file), max_bytes=600, backup_count=2)
    for i in range(12):
        logger.log(make_audit_event(action=f"event-{i}"))
    assert validate_audit_chain(log_file).valid
    assert validate_audit_chain(tmp_path / "audit.jsonl.1").valid


def test_rotation_configurable_via_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AUDIT_LOG_MAX_BYTES", "500")
    monkeypatch.setenv("AUDIT_LOG_BACKUP_COUNT", "7")
    logger = AuditLogger.from_env(str(tmp_path / "audit.jsonl"))
    assert logger._max_bytes == 500
    assert logger._backup_count == 7


# --- Hash chain tests ---


def test_entries_chain_to_previous_line(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    logger.log(make_audit_event(action="first"))
    logger.log(make_audit_event(action="second"))
    lines = log_file.read_text().strip().split("\n")
    assert json.loads(lines[0])["prev_hash"] is None
    assert json.loads(lines[1])["prev_hash"] == hashlib.sha256(lines[0].encode()).hexdigest()


def test_chain_resumes_after_restart(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    AuditLogger(log_path=str(log_file)).log(make_audit_event(action="before"))
    AuditLogger(log_path=str(log_file)).log(make_audit_event(action="after"))
    assert validate_audit_chain(log_file).valid


def test_validate_chain_detects_tampering(tmp_path: Path) -> None:
    log_file = tmp_path / "audit.jsonl"
    logger = AuditLogger(log_path=str(log_file))
    for i in range(5):
        logger.log(make_audit_event(action=f"event-{i}"))
    lines = log_file.read_text().strip().split("\n")
    lines[2] = lines[2].replace("event-2", "TAMPERED")
    log_file.write_text("\n".join(lines) + "\n")
    result = validate_audit_chain(log_file)
    assert not result.valid
    assert result.broken_at_line == 4
