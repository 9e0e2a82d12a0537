"""Add unified public_access_tokens table, security_logs and legacy bridge columns

Revision ID: 001_public_access_tokens
Revises:
Create Date: 2025-10-07

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_public_access_tokens'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'public_access_tokens',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('token', sa.String(length=128), nullable=False),
        sa.Column('access_type', sa.String(length=32), nullable=False),

        # Context references
        sa.Column('event_id', sa.String(length=36), nullable=True),
        sa.Column('share_token_id', sa.String(length=36), nullable=True),
        sa.Column('subject_token_id', sa.String(length=36), nullable=True),
        sa.Column('student_token_id', sa.String(length=36), nullable=True),
        sa.Column('folder_id', sa.String(length=36), nullable=True),
        sa.Column('subject_id', sa.String(length=36), nullable=True),
        sa.Column('student_id', sa.String(length=36), nullable=True),

        # Share settings
        sa.Column('share_type', sa.String(length=20), nullable=True),
        sa.Column('photo_ids', sa.JSON(), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('password_hash', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('allow_download', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('allow_comments', sa.Boolean(), nullable=False, server_default=sa.false()),

        # Limits
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('max_views', sa.Integer(), nullable=True),
        sa.Column('view_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),

        # Legacy provenance
        sa.Column('is_legacy', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('legacy_source', sa.String(length=32), nullable=False),
        sa.Column('legacy_reference', sa.String(length=36), nullable=True),
        sa.Column('legacy_payload', sa.JSON(), nullable=True),
        sa.Column('legacy_migrated_at', sa.DateTime(), nullable=True),

        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_public_access_tokens_token', 'public_access_tokens', ['token'], unique=True)
    op.create_index('ix_public_access_tokens_access_type', 'public_access_tokens', ['access_type'])
    op.create_index('ix_public_access_tokens_event_id', 'public_access_tokens', ['event_id'])
    op.create_index('ix_public_access_tokens_share_token_id', 'public_access_tokens', ['share_token_id'])
    op.create_index('ix_public_access_tokens_created_at', 'public_access_tokens', ['created_at'])

    op.create_table(
        'security_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('severity', sa.String(length=16), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('request_path', sa.String(length=500), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_security_logs_event_type', 'security_logs', ['event_type'])
    op.create_index('ix_security_logs_severity', 'security_logs', ['severity'])
    op.create_index('ix_security_logs_created_at', 'security_logs', ['created_at'])

    # Bridge columns on the legacy token sources
    for table in ('share_tokens', 'subject_tokens', 'student_tokens'):
        with op.batch_alter_table(table) as batch_op:
            batch_op.add_column(sa.Column('public_access_token_id', sa.String(length=36), nullable=True))
            batch_op.add_column(sa.Column('legacy_migrated_at', sa.DateTime(), nullable=True))
            batch_op.create_index(f'ix_{table}_public_access_token_id', ['public_access_token_id'])

    with op.batch_alter_table('folders') as batch_op:
        batch_op.add_column(sa.Column('public_access_token_id', sa.String(length=36), nullable=True))
        batch_op.add_column(sa.Column('legacy_public_access_migrated_at', sa.DateTime(), nullable=True))
        batch_op.create_index('ix_folders_public_access_token_id', ['public_access_token_id'])


def downgrade():
    with op.batch_alter_table('folders') as batch_op:
        batch_op.drop_index('ix_folders_public_access_token_id')
        batch_op.drop_column('legacy_public_access_migrated_at')
        batch_op.drop_column('public_access_token_id')

    for table in ('student_tokens', 'subject_tokens', 'share_tokens'):
        with op.batch_alter_table(table) as batch_op:
            batch_op.drop_index(f'ix_{table}_public_access_token_id')
            batch_op.drop_column('legacy_migrated_at')
            batch_op.drop_column('public_access_token_id')

    op.drop_index('ix_security_logs_created_at', table_name='security_logs')
    op.drop_index('ix_security_logs_severity', table_name='security_logs')
    op.drop_index('ix_security_logs_event_type', table_name='security_logs')
    op.drop_table('security_logs')

    op.drop_index('ix_public_access_tokens_created_at', table_name='public_access_tokens')
    op.drop_index('ix_public_access_tokens_share_token_id', table_name='public_access_tokens')
    op.drop_index('ix_public_access_tokens_event_id', table_name='public_access_tokens')
    op.drop_index('ix_public_access_tokens_access_type', table_name='public_access_tokens')
    op.drop_index('ix_public_access_tokens_token', table_name='public_access_tokens')
    op.drop_table('public_access_tokens')
