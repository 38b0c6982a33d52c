"""Tests for violation classification, the audit trail and risk aggregation."""

import uuid

import pytest
from sqlalchemy.orm import Session

from quiz_engine.core.errors import ViolationNotFound
from quiz_engine.db.models import (
    SecurityAuditRecord,
    SeverityEnum,
    ViolationActionEnum,
    ViolationTypeEnum,
)
from quiz_engine.schemas.attempt import SecuritySignals, ViolationEvent
from quiz_engine.services import violations


def _events(*types: str) -> list[ViolationEvent]:
    return [ViolationEvent(type=t) for t in types]


def _record(db: Session, attempt, clock, signals: SecuritySignals, penalty: float = 0.0, **kw):
    records = violations.record_violations(
        db, attempt, signals, penalty=penalty,
        security_lock=kw.pop("security_lock", False), now=clock(), **kw,
    )
    db.commit()
    return records


@pytest.fixture
def attempt(service, make_quiz, student):
    return service.create_attempt(student.id, make_quiz(10).id)


# ── Classification ─────────────────────────────────────────────────────────────


class TestClassify:
    @pytest.mark.parametrize(
        "signal, counters, expected",
        [
            ("tab-switch", {"tab_switch_count": 1}, (ViolationTypeEnum.TAB_SWITCH, SeverityEnum.MEDIUM)),
            ("tab-switch", {"tab_switch_count": 3}, (ViolationTypeEnum.TAB_SWITCH, SeverityEnum.HIGH)),
            ("fullscreen-exit", {"fullscreen_exits": 1}, (ViolationTypeEnum.FULLSCREEN_EXIT, SeverityEnum.MEDIUM)),
            ("fullscreen-exit", {"fullscreen_exits": 2}, (ViolationTypeEnum.FULLSCREEN_EXIT, SeverityEnum.HIGH)),
            ("keyboard-shortcut", {"blocked_shortcut_count": 4}, (ViolationTypeEnum.KEYBOARD_SHORTCUT, SeverityEnum.LOW)),
            ("keyboard-shortcut", {"blocked_shortcut_count": 5}, (ViolationTypeEnum.KEYBOARD_SHORTCUT, SeverityEnum.MEDIUM)),
            ("window-minimize", {}, (ViolationTypeEnum.WINDOW_MINIMIZE, SeverityEnum.HIGH)),
            ("context-menu", {}, (ViolationTypeEnum.CONTEXT_MENU, SeverityEnum.LOW)),
            ("clipboard", {}, (ViolationTypeEnum.CLIPBOARD_ACCESS, SeverityEnum.MEDIUM)),
            ("devtools-open-heuristic", {}, (ViolationTypeEnum.DEVTOOLS_DETECTED, SeverityEnum.HIGH)),
            ("suspicious-timing", {}, (ViolationTypeEnum.SUSPICIOUS_TIMING, SeverityEnum.MEDIUM)),
            ("auto-submit", {}, (ViolationTypeEnum.AUTO_SUBMIT, SeverityEnum.CRITICAL)),
            ("screen-recorder", {}, (ViolationTypeEnum.OTHER, SeverityEnum.LOW)),
        ],
    )
    def test_signal_mapping(self, signal, counters, expected):
        assert violations.classify(signal, SecuritySignals(**counters)) == expected

    def test_technical_events(self):
        assert violations.is_technical(
            ViolationEvent(type="fullscreen-error", details={"message": "Permissions check failed"})
        )
        assert violations.is_technical(
            ViolationEvent(type="other", details={"message": "Browser Compatibility warning"})
        )
        assert not violations.is_technical(ViolationEvent(type="fullscreen-error"))
        assert not violations.is_technical(ViolationEvent(type="tab-switch"))


class TestDecideAction:
    def test_security_lock_wins(self):
        signals = SecuritySignals(auto_submitted=True)
        assert violations.decide_action(signals, 25, security_lock=True) == ViolationActionEnum.DISQUALIFICATION

    def test_auto_submit(self):
        signals = SecuritySignals(auto_submitted=True)
        assert violations.decide_action(signals, 15, security_lock=False) == ViolationActionEnum.AUTO_SUBMIT

    def test_penalty_and_warning(self):
        assert violations.decide_action(SecuritySignals(), 5, security_lock=False) == ViolationActionEnum.PENALTY
        assert violations.decide_action(SecuritySignals(), 0, security_lock=False) == ViolationActionEnum.WARNING


# ── Audit trail ────────────────────────────────────────────────────────────────


class TestRecordViolations:
    def test_one_record_per_event_plus_excessive_tab_switching(self, db, attempt, clock):
        signals = SecuritySignals(
            violations=_events("tab-switch", "tab-switch", "context-menu"),
            tab_switch_count=4,
        )
        records = _record(
            db, attempt, clock, signals, penalty=10,
            user_agent="Mozilla/5.0", ip_address="10.0.0.7",
        )

        assert len(records) == 4
        assert records[-1].description == "Excessive tab switching detected: 4 times"
        assert records[-1].severity == SeverityEnum.HIGH
        assert all(r.penalty_applied == 10 for r in records)
        assert all(r.action == ViolationActionEnum.PENALTY for r in records)
        assert records[0].details["ip_address"] == "10.0.0.7"
        assert records[0].details["user_agent"] == "Mozilla/5.0"
        assert db.query(SecurityAuditRecord).count() == 4

    def test_no_synthetic_record_at_three_switches(self, db, attempt, clock):
        records = _record(db, attempt, clock, SecuritySignals(tab_switch_count=3))
        assert records == []

    def test_technical_events_are_still_recorded(self, db, attempt, clock):
        event = ViolationEvent(type="fullscreen-error", details={"message": "Permissions check failed"})
        records = _record(db, attempt, clock, SecuritySignals(violations=[event]))
        assert len(records) == 1
        assert records[0].violation_type == ViolationTypeEnum.OTHER
        assert records[0].description == "Permissions check failed"

    def test_records_carry_attempt_scope(self, db, attempt, clock):
        (record,) = _record(db, attempt, clock, SecuritySignals(violations=_events("clipboard")))
        assert record.attempt_id == attempt.id
        assert record.student_id == attempt.student_id
        assert record.course_id == attempt.course_id
        assert record.is_resolved is False


# ── Aggregations ───────────────────────────────────────────────────────────────


class TestRisk:
    def test_risk_level_thresholds(self):
        assert violations.risk_level(0) == "LOW"
        assert violations.risk_level(19) == "LOW"
        assert violations.risk_level(20) == "MEDIUM"
        assert violations.risk_level(50) == "HIGH"

    def test_student_risk_weights_severities(self, db, attempt, clock, student):
        # HIGH 7 + LOW 1 + MEDIUM 3 + CRITICAL 15
        _record(
            db, attempt, clock,
            SecuritySignals(violations=_events("window-minimize", "context-menu", "clipboard", "auto-submit")),
        )
        risk = violations.student_risk(db, student.id)
        assert risk["risk_score"] == 26
        assert risk["risk_level"] == "MEDIUM"
        assert risk["total_violations"] == 4
        assert risk["by_severity"]["CRITICAL"] == 1

    def test_clean_student(self, db):
        risk = violations.student_risk(db, uuid.uuid4())
        assert risk["risk_score"] == 0
        assert risk["risk_level"] == "LOW"

    def test_list_student_violations_is_scoped(self, db, attempt, clock, student):
        _record(db, attempt, clock, SecuritySignals(violations=_events("clipboard", "context-menu")))
        assert len(violations.list_student_violations(db, student.id)) == 2
        assert violations.list_student_violations(db, uuid.uuid4()) == []


class TestAttemptSummary:
    def test_summary_counts_and_penalty(self, db, attempt, clock):
        _record(
            db, attempt, clock,
            SecuritySignals(violations=_events("tab-switch", "clipboard"), auto_submitted=True),
            penalty=15,
        )
        summary = violations.attempt_summary(db, attempt.id)
        assert summary["total_violations"] == 2
        assert summary["by_type"] == {"TAB_SWITCH": 1, "CLIPBOARD_ACCESS": 1}
        assert summary["total_penalty"] == 15
        assert summary["highest_action"] == ViolationActionEnum.AUTO_SUBMIT

    def test_empty_summary(self, db, attempt):
        summary = violations.attempt_summary(db, attempt.id)
        assert summary["total_violations"] == 0
        assert summary["total_penalty"] == 0
        assert summary["highest_action"] is None


class TestResolve:
    def test_resolve_sets_metadata_only(self, db, attempt, clock):
        (record,) = _record(db, attempt, clock, SecuritySignals(violations=_events("clipboard")))
        admin_id = uuid.uuid4()
        resolved = violations.resolve_violation(db, record.id, admin_id, "False positive")
        assert resolved.is_resolved is True
        assert resolved.resolved_by == admin_id
        assert resolved.resolution_notes == "False positive"
        assert resolved.resolved_at is not None
        assert resolved.violation_type == ViolationTypeEnum.CLIPBOARD_ACCESS

    def test_unknown_violation(self, db):
        with pytest.raises(ViolationNotFound):
            violations.resolve_violation(db, uuid.uuid4(), uuid.uuid4())


class TestHighRiskCourses:
    def test_ranking_and_threshold(self, db, service, make_quiz, clock):
        risky_course, quiet_course = uuid.uuid4(), uuid.uuid4()
        risky = [
            service.create_attempt(uuid.uuid4(), make_quiz(5, course=risky_course).id)
            for _ in range(2)
        ]
        quiet = service.create_attempt(uuid.uuid4(), make_quiz(5, course=quiet_course).id)

        for attempt in risky:
            _record(db, attempt, clock, SecuritySignals(violations=_events("window-minimize", "context-menu")))
        _record(db, quiet, clock, SecuritySignals(violations=_events("context-menu")))

        ranked = violations.high_risk_courses(db)
        assert [c["course_id"] for c in ranked] == [risky_course]
        # 4 violations + 3 * 2 high severity
        assert ranked[0]["risk_score"] == 10
        assert ranked[0]["unique_students"] == 2
        assert ranked[0]["high_severity_count"] == 2

    def test_min_risk_can_be_lowered(self, db, attempt, clock):
        _record(db, attempt, clock, SecuritySignals(violations=_events("context-menu")))
        assert violations.high_risk_courses(db) == []
        assert len(violations.high_risk_courses(db, min_risk=1)) == 1
