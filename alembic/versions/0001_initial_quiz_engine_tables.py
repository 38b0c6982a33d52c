"""Initial migration - quizzes, attempts, security audit and locks

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_ENUMS = {
    'attempt_mode_enum': ('SECURE', 'UNIT'),
    'failure_reason_enum': ('BELOW_PASSING_SCORE', 'SECURITY_VIOLATION', 'TIME_EXCEEDED', 'MANUAL_LOCK'),
    'authorization_level_enum': ('TEACHER', 'HOD', 'DEAN'),
    'unlock_tier_enum': ('TEACHER', 'HOD', 'DEAN', 'ADMIN'),
    'violation_type_enum': (
        'TAB_SWITCH', 'FULLSCREEN_EXIT', 'WINDOW_MINIMIZE', 'KEYBOARD_SHORTCUT',
        'CONTEXT_MENU', 'CLIPBOARD_ACCESS', 'DEVTOOLS_DETECTED', 'SUSPICIOUS_TIMING',
        'AUTO_SUBMIT', 'OTHER',
    ),
    'severity_enum': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'violation_action_enum': ('WARNING', 'PENALTY', 'AUTO_SUBMIT', 'DISQUALIFICATION'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*_ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # ── Create enums ──────────────────────────────────────────────────
    for name, labels in _ENUMS.items():
        values = ", ".join(f"'{label}'" for label in labels)
        op.execute(f"""
            DO $$ BEGIN
                CREATE TYPE {name} AS ENUM ({values});
            EXCEPTION WHEN duplicate_object THEN null;
            END $$;
        """)

    # ── quizzes / questions ───────────────────────────────────────────
    op.create_table(
        'quizzes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('course_id', sa.UUID(), nullable=False),
        sa.Column('unit_id', sa.UUID(), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('time_limit_minutes', sa.Integer(), nullable=True),
        sa.Column('passing_score', sa.Float(), nullable=True),
        sa.Column('questions_per_attempt', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.Index('ix_quizzes_course_id', 'course_id'),
        sa.Index('ix_quizzes_unit_id', 'unit_id'),
    )
    op.create_table(
        'questions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('quiz_id', sa.UUID(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('correct_option', sa.Integer(), nullable=False),
        sa.Column('points', sa.Float(), nullable=False, server_default='1'),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['quiz_id'], ['quizzes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('correct_option >= 0', name='ck_question_correct_option'),
        sa.CheckConstraint('points >= 0', name='ck_question_points'),
    )

    # ── pools ─────────────────────────────────────────────────────────
    op.create_table(
        'quiz_pools',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('course_id', sa.UUID(), nullable=False),
        sa.Column('unit_id', sa.UUID(), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('questions_per_attempt', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('time_limit_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('passing_score', sa.Float(), nullable=False, server_default='70'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'questions_per_attempt >= 5 AND questions_per_attempt <= 30',
            name='ck_pool_questions_per_attempt',
        ),
        sa.Index('ix_quiz_pools_course_id', 'course_id'),
        sa.Index('ix_quiz_pools_unit_id', 'unit_id'),
    )
    op.create_table(
        'pool_quizzes',
        sa.Column('pool_id', sa.UUID(), nullable=False),
        sa.Column('quiz_id', sa.UUID(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['pool_id'], ['quiz_pools.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['quiz_id'], ['quizzes.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('pool_id', 'quiz_id'),
    )

    # ── attempts ──────────────────────────────────────────────────────
    op.create_table(
        'attempts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('student_id', sa.UUID(), nullable=False),
        sa.Column('course_id', sa.UUID(), nullable=False),
        sa.Column('unit_id', sa.UUID(), nullable=True),
        sa.Column('quiz_id', sa.UUID(), nullable=True),
        sa.Column('pool_id', sa.UUID(), nullable=True),
        sa.Column('source_id', sa.UUID(), nullable=False),
        sa.Column('mode', _enum('attempt_mode_enum'), nullable=False, server_default='SECURE'),
        sa.Column('questions', sa.JSON(), nullable=False),
        sa.Column('answers', sa.JSON(), nullable=True),
        sa.Column('score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('max_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('raw_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('raw_percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('penalty', sa.Float(), nullable=False, server_default='0'),
        sa.Column('passed', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('passing_score', sa.Float(), nullable=False, server_default='70'),
        sa.Column('time_limit_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('security_settings', sa.JSON(), nullable=False),
        sa.Column('security_data', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_complete', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_submitted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('auto_submitted', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('time_exceeded', sa.Boolean(), nullable=False, server_default='false'),
        sa.ForeignKeyConstraint(['quiz_id'], ['quizzes.id']),
        sa.ForeignKeyConstraint(['pool_id'], ['quiz_pools.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('percentage >= 0 AND percentage <= 100', name='ck_attempt_percentage'),
        sa.Index('ix_attempts_student_id', 'student_id'),
        sa.Index('ix_attempts_course_id', 'course_id'),
        sa.Index('ix_attempts_source_id', 'source_id'),
    )
    op.create_index(
        'uq_attempt_open_per_source',
        'attempts',
        ['student_id', 'source_id'],
        unique=True,
        postgresql_where=sa.text('is_complete = false'),
    )

    # ── security audit ────────────────────────────────────────────────
    op.create_table(
        'security_audit_records',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('student_id', sa.UUID(), nullable=False),
        sa.Column('course_id', sa.UUID(), nullable=False),
        sa.Column('unit_id', sa.UUID(), nullable=True),
        sa.Column('attempt_id', sa.UUID(), nullable=False),
        sa.Column('violation_type', _enum('violation_type_enum'), nullable=False),
        sa.Column('severity', _enum('severity_enum'), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('penalty_applied', sa.Float(), nullable=False, server_default='0'),
        sa.Column('action', _enum('violation_action_enum'), nullable=False, server_default='WARNING'),
        sa.Column('is_resolved', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('resolved_by', sa.UUID(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['attempt_id'], ['attempts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.Index('ix_security_audit_records_student_id', 'student_id'),
        sa.Index('ix_security_audit_records_course_id', 'course_id'),
        sa.Index('ix_security_audit_records_attempt_id', 'attempt_id'),
    )

    # ── locks ─────────────────────────────────────────────────────────
    op.create_table(
        'quiz_locks',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('student_id', sa.UUID(), nullable=False),
        sa.Column('quiz_id', sa.UUID(), nullable=False),
        sa.Column('course_id', sa.UUID(), nullable=False),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('failure_reason', _enum('failure_reason_enum'), nullable=True),
        sa.Column('last_failure_score', sa.Float(), nullable=True),
        sa.Column('passing_score', sa.Float(), nullable=False, server_default='70'),
        sa.Column('lock_timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('authorization_level', _enum('authorization_level_enum'), nullable=False, server_default='TEACHER'),
        sa.Column('teacher_unlock_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('hod_unlock_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dean_unlock_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('admin_unlock_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_score', sa.Float(), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('student_id', 'quiz_id', name='uq_lock_student_quiz'),
        sa.Index('ix_quiz_locks_student_id', 'student_id'),
        sa.Index('ix_quiz_locks_quiz_id', 'quiz_id'),
        sa.Index('ix_quiz_locks_course_id', 'course_id'),
    )
    op.create_table(
        'quiz_unlock_events',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('lock_id', sa.UUID(), nullable=False),
        sa.Column('tier', _enum('unlock_tier_enum'), nullable=False),
        sa.Column('actor_id', sa.UUID(), nullable=False),
        sa.Column('unlocked_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('overridden_level', _enum('authorization_level_enum'), nullable=True),
        sa.Column('lock_reason', _enum('failure_reason_enum'), nullable=True),
        sa.ForeignKeyConstraint(['lock_id'], ['quiz_locks.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.Index('ix_quiz_unlock_events_lock_id', 'lock_id'),
    )

    # ── audit log ─────────────────────────────────────────────────────
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('action', sa.String(64), nullable=False),
        sa.Column('performed_by', sa.UUID(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.Index('ix_audit_logs_action', 'action'),
    )


def downgrade() -> None:
    # Drop all tables in reverse order
    op.drop_table('audit_logs')
    op.drop_table('quiz_unlock_events')
    op.drop_table('quiz_locks')
    op.drop_table('security_audit_records')
    op.drop_index('uq_attempt_open_per_source', table_name='attempts')
    op.drop_table('attempts')
    op.drop_table('pool_quizzes')
    op.drop_table('quiz_pools')
    op.drop_table('questions')
    op.drop_table('quizzes')
    for name in reversed(list(_ENUMS)):
        op.execute(f"DROP TYPE IF EXISTS {name}")
