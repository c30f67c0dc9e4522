"""initial schema: users, break-glass sessions, audit log

Revision ID: 001
Revises:
Create Date: 2026-10-17

Creates the three tables behind privileged access:

1. users - portal accounts with their base role set
2. break_glass_sessions - emergency elevation grants
   - Partial unique index: at most one active session per subject user.
     This index is the serialization point for concurrent activations.
3. audit_logs - append-only record of privileged actions
   - Trigger rejects UPDATE and DELETE
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create users, break_glass_sessions and audit_logs."""

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('department', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='ACTIVE'),
        sa.Column('roles', postgresql.JSONB(), nullable=False, server_default=sa.text("'[\"FACULTY\"]'::jsonb")),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_status', 'users', ['status'], unique=False)

    # Base roles may never hold ADMIN together with ACADEMIC_HEAD
    op.create_check_constraint(
        'ck_users_roles_exclusive',
        'users',
        "NOT (roles ? 'ADMIN' AND roles ? 'ACADEMIC_HEAD')",
    )

    op.create_table(
        'break_glass_sessions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('subject_user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('activated_by_user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('flow', sa.String(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('original_roles', postgresql.JSONB(), nullable=False),
        sa.Column('activated_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('encrypted_promotion_code', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('ended_by_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('end_reason', sa.String(), nullable=True),
        sa.ForeignKeyConstraint(['subject_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['activated_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['ended_by_user_id'], ['users.id'], ),
    )
    op.create_index('ix_break_glass_sessions_subject_user_id', 'break_glass_sessions', ['subject_user_id'], unique=False)
    op.create_index('ix_break_glass_sessions_activated_by_user_id', 'break_glass_sessions', ['activated_by_user_id'], unique=False)
    op.create_index('ix_break_glass_sessions_expires_at', 'break_glass_sessions', ['expires_at'], unique=False)
    op.create_index('ix_break_glass_sessions_is_active', 'break_glass_sessions', ['is_active'], unique=False)
    op.create_index(
        'uq_break_glass_sessions_active_subject',
        'break_glass_sessions',
        ['subject_user_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
    )

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('actor_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('module', sa.String(100), nullable=False),
        sa.Column('before', postgresql.JSONB(), nullable=True),
        sa.Column('after', postgresql.JSONB(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='SUCCESS'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('batch_id', sa.String(64), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_audit_logs_actor_user_id', 'audit_logs', ['actor_user_id'], unique=False)
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'], unique=False)
    op.create_index('ix_audit_logs_module', 'audit_logs', ['module'], unique=False)
    op.create_index('ix_audit_logs_status', 'audit_logs', ['status'], unique=False)
    op.create_index('ix_audit_logs_batch_id', 'audit_logs', ['batch_id'], unique=False)
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'], unique=False)
    op.create_index('ix_audit_logs_module_created', 'audit_logs', ['module', 'created_at'], unique=False)

    # Append-only: reject any UPDATE or DELETE on audit_logs
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_audit_log_mutation()
        RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'audit_logs is append-only (% rejected)', TG_OP;
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER audit_logs_append_only
        BEFORE UPDATE OR DELETE ON audit_logs
        FOR EACH ROW EXECUTE FUNCTION reject_audit_log_mutation();
    """)


def downgrade():
    """Drop all three tables (and the append-only trigger)."""
    op.execute("DROP TRIGGER IF EXISTS audit_logs_append_only ON audit_logs;")
    op.execute("DROP FUNCTION IF EXISTS reject_audit_log_mutation();")

    op.drop_index('ix_audit_logs_module_created', table_name='audit_logs')
    op.drop_index('ix_audit_logs_created_at', table_name='audit_logs')
    op.drop_index('ix_audit_logs_batch_id', table_name='audit_logs')
    op.drop_index('ix_audit_logs_status', table_name='audit_logs')
    op.drop_index('ix_audit_logs_module', table_name='audit_logs')
    op.drop_index('ix_audit_logs_action', table_name='audit_logs')
    op.drop_index('ix_audit_logs_actor_user_id', table_name='audit_logs')
    op.drop_table('audit_logs')

    op.drop_index('uq_break_glass_sessions_active_subject', table_name='break_glass_sessions')
    op.drop_index('ix_break_glass_sessions_is_active', table_name='break_glass_sessions')
    op.drop_index('ix_break_glass_sessions_expires_at', table_name='break_glass_sessions')
    op.drop_index('ix_break_glass_sessions_activated_by_user_id', table_name='break_glass_sessions')
    op.drop_index('ix_break_glass_sessions_subject_user_id', table_name='break_glass_sessions')
    op.drop_table('break_glass_sessions')

    op.drop_constraint('ck_users_roles_exclusive', 'users', type_='check')
    op.drop_index('ix_users_status', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
