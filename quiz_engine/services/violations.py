"""Security violation classification and audit trail.

Client-reported proctoring events are mapped onto a fixed set of violation
types with a severity that can escalate with the attempt-wide counters
(e.g. a tab switch is MEDIUM, but HIGH once the student switched three
times).  Each event becomes an immutable ``SecurityAuditRecord``; only the
resolution metadata may be filled in later by an admin.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from quiz_engine.core.errors import ViolationNotFound
from quiz_engine.db.models import (
    Attempt,
    SecurityAuditRecord,
    SeverityEnum,
    ViolationActionEnum,
    ViolationTypeEnum,
)
from quiz_engine.schemas.attempt import SecuritySignals, ViolationEvent

logger = logging.getLogger(__name__)

# ── Classification ────────────────────────────────────────────────────────────

_SIGNAL_TYPES: dict[str, ViolationTypeEnum] = {
    "tab-switch": ViolationTypeEnum.TAB_SWITCH,
    "fullscreen-exit": ViolationTypeEnum.FULLSCREEN_EXIT,
    "window-minimize": ViolationTypeEnum.WINDOW_MINIMIZE,
    "keyboard-shortcut": ViolationTypeEnum.KEYBOARD_SHORTCUT,
    "context-menu": ViolationTypeEnum.CONTEXT_MENU,
    "clipboard": ViolationTypeEnum.CLIPBOARD_ACCESS,
    "devtools-heuristic": ViolationTypeEnum.DEVTOOLS_DETECTED,
    "devtools-open-heuristic": ViolationTypeEnum.DEVTOOLS_DETECTED,
    "suspicious-timing": ViolationTypeEnum.SUSPICIOUS_TIMING,
    "auto-submit": ViolationTypeEnum.AUTO_SUBMIT,
}

_FIXED_SEVERITY: dict[ViolationTypeEnum, SeverityEnum] = {
    ViolationTypeEnum.WINDOW_MINIMIZE: SeverityEnum.HIGH,
    ViolationTypeEnum.CONTEXT_MENU: SeverityEnum.LOW,
    ViolationTypeEnum.CLIPBOARD_ACCESS: SeverityEnum.MEDIUM,
    ViolationTypeEnum.DEVTOOLS_DETECTED: SeverityEnum.HIGH,
    ViolationTypeEnum.SUSPICIOUS_TIMING: SeverityEnum.MEDIUM,
    ViolationTypeEnum.AUTO_SUBMIT: SeverityEnum.CRITICAL,
    ViolationTypeEnum.OTHER: SeverityEnum.LOW,
}

SEVERITY_WEIGHTS: dict[SeverityEnum, int] = {
    SeverityEnum.LOW: 1,
    SeverityEnum.MEDIUM: 3,
    SeverityEnum.HIGH: 7,
    SeverityEnum.CRITICAL: 15,
}

_ACTION_ORDER = [
    ViolationActionEnum.WARNING,
    ViolationActionEnum.PENALTY,
    ViolationActionEnum.AUTO_SUBMIT,
    ViolationActionEnum.DISQUALIFICATION,
]

EXCESSIVE_TAB_SWITCH_THRESHOLD = 3


def classify(
    signal: str, signals: SecuritySignals
) -> tuple[ViolationTypeEnum, SeverityEnum]:
    """Map a raw signal name to its violation type and severity."""
    vtype = _SIGNAL_TYPES.get(signal, ViolationTypeEnum.OTHER)

    if vtype == ViolationTypeEnum.TAB_SWITCH:
        high = signals.tab_switch_count >= 3
        return vtype, SeverityEnum.HIGH if high else SeverityEnum.MEDIUM
    if vtype == ViolationTypeEnum.FULLSCREEN_EXIT:
        high = signals.fullscreen_exits >= 2
        return vtype, SeverityEnum.HIGH if high else SeverityEnum.MEDIUM
    if vtype == ViolationTypeEnum.KEYBOARD_SHORTCUT:
        medium = signals.blocked_shortcut_count >= 5
        return vtype, SeverityEnum.MEDIUM if medium else SeverityEnum.LOW
    return vtype, _FIXED_SEVERITY[vtype]


def is_technical(event: ViolationEvent) -> bool:
    """Browser capability errors, which are not counted against the student."""
    message = str(event.details.get("message", ""))
    if event.type == "fullscreen-error" and "Permissions check failed" in message:
        return True
    return "browser compatibility" in message.lower()


def decide_action(
    signals: SecuritySignals, penalty: float, *, security_lock: bool
) -> ViolationActionEnum:
    if security_lock:
        return ViolationActionEnum.DISQUALIFICATION
    if signals.auto_submitted:
        return ViolationActionEnum.AUTO_SUBMIT
    if penalty > 0:
        return ViolationActionEnum.PENALTY
    return ViolationActionEnum.WARNING


# ── Audit trail ───────────────────────────────────────────────────────────────


def record_violations(
    db: Session,
    attempt: Attempt,
    signals: SecuritySignals,
    *,
    penalty: float,
    security_lock: bool,
    now: datetime,
    user_agent: str | None = None,
    ip_address: str | None = None,
) -> list[SecurityAuditRecord]:
    """Persist one record per reported event, plus a synthetic record for
    excessive tab switching.  Caller owns the transaction."""
    action = decide_action(signals, penalty, security_lock=security_lock)
    records: list[SecurityAuditRecord] = []

    def _add(signal: str, description: str, details: dict) -> None:
        vtype, severity = classify(signal, signals)
        record = SecurityAuditRecord(
            student_id=attempt.student_id,
            course_id=attempt.course_id,
            unit_id=attempt.unit_id,
            attempt_id=attempt.id,
            violation_type=vtype,
            severity=severity,
            description=description,
            details={
                **details,
                "user_agent": user_agent,
                "ip_address": ip_address,
            },
            penalty_applied=penalty,
            action=action,
            created_at=now,
        )
        db.add(record)
        records.append(record)

    for event in signals.violations:
        _add(
            event.type,
            str(event.details.get("message") or f"Security violation: {event.type}"),
            {
                "signal": event.type,
                "timestamp": (event.timestamp or now).isoformat(),
                "payload": event.details,
            },
        )

    if signals.tab_switch_count > EXCESSIVE_TAB_SWITCH_THRESHOLD:
        _add(
            "tab-switch",
            f"Excessive tab switching detected: {signals.tab_switch_count} times",
            {
                "signal": "tab-switch",
                "timestamp": now.isoformat(),
                "tab_switch_count": signals.tab_switch_count,
            },
        )

    if records:
        logger.info(
            "Attempt %s: recorded %d security violation(s), action=%s",
            attempt.id, len(records), action.value,
        )
    return records


# ── Aggregations ──────────────────────────────────────────────────────────────


def risk_level(score: int) -> str:
    if score >= 50:
        return "HIGH"
    if score >= 20:
        return "MEDIUM"
    return "LOW"


def student_risk(db: Session, student_id: uuid.UUID) -> dict:
    """Weighted severity score over all of a student's violations."""
    rows = (
        db.query(SecurityAuditRecord.severity, func.count(SecurityAuditRecord.id))
        .filter(SecurityAuditRecord.student_id == student_id)
        .group_by(SecurityAuditRecord.severity)
        .all()
    )
    by_severity = {sev.value: count for sev, count in rows}
    score = sum(SEVERITY_WEIGHTS[sev] * count for sev, count in rows)
    return {
        "student_id": student_id,
        "risk_score": score,
        "risk_level": risk_level(score),
        "total_violations": sum(by_severity.values()),
        "by_severity": by_severity,
    }


def list_student_violations(
    db: Session, student_id: uuid.UUID, *, limit: int = 50
) -> list[SecurityAuditRecord]:
    return (
        db.query(SecurityAuditRecord)
        .filter(SecurityAuditRecord.student_id == student_id)
        .order_by(SecurityAuditRecord.created_at.desc())
        .limit(limit)
        .all()
    )


def attempt_summary(db: Session, attempt_id: uuid.UUID) -> dict:
    records = (
        db.query(SecurityAuditRecord)
        .filter(SecurityAuditRecord.attempt_id == attempt_id)
        .all()
    )
    highest = None
    for record in records:
        if highest is None or _ACTION_ORDER.index(record.action) > _ACTION_ORDER.index(highest):
            highest = record.action
    return {
        "attempt_id": attempt_id,
        "total_violations": len(records),
        "by_type": dict(Counter(r.violation_type.value for r in records)),
        "by_severity": dict(Counter(r.severity.value for r in records)),
        # The penalty is attempt-wide and repeated on each record.
        "total_penalty": max((r.penalty_applied for r in records), default=0.0),
        "highest_action": highest,
    }


def resolve_violation(
    db: Session,
    violation_id: uuid.UUID,
    resolver_id: uuid.UUID,
    notes: str = "",
) -> SecurityAuditRecord:
    record = db.get(SecurityAuditRecord, violation_id)
    if record is None:
        raise ViolationNotFound(violation_id=violation_id)
    record.is_resolved = True
    record.resolved_by = resolver_id
    record.resolved_at = datetime.now(timezone.utc)
    record.resolution_notes = notes
    db.commit()
    db.refresh(record)
    logger.info("Violation %s resolved by %s", violation_id, resolver_id)
    return record


def high_risk_courses(
    db: Session, *, min_risk: int = 5, limit: int = 20
) -> list[dict]:
    """Courses ranked by ``violations + 3 * HIGH/CRITICAL violations``."""
    records = db.query(
        SecurityAuditRecord.course_id,
        SecurityAuditRecord.student_id,
        SecurityAuditRecord.severity,
    ).all()

    per_course: dict[uuid.UUID, dict] = {}
    for course_id, student_id, severity in records:
        entry = per_course.setdefault(
            course_id, {"course_id": course_id, "violation_count": 0,
                        "high_severity_count": 0, "students": set()}
        )
        entry["violation_count"] += 1
        if severity in (SeverityEnum.HIGH, SeverityEnum.CRITICAL):
            entry["high_severity_count"] += 1
        entry["students"].add(student_id)

    ranked = []
    for entry in per_course.values():
        risk = entry["violation_count"] + 3 * entry["high_severity_count"]
        if risk < min_risk:
            continue
        ranked.append({
            "course_id": entry["course_id"],
            "violation_count": entry["violation_count"],
            "high_severity_count": entry["high_severity_count"],
            "unique_students": len(entry["students"]),
            "risk_score": risk,
        })
    ranked.sort(key=lambda c: c["risk_score"], reverse=True)
    return ranked[:limit]
