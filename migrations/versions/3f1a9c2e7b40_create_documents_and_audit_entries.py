"""create documents and audit entries tables

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-18 09:12:44.120391

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # documents table (status projection)
    op.create_table(
        'documents',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False),
        sa.Column('file_size', sa.Integer(), nullable=False),
        sa.Column('file_type', sa.String(length=128), nullable=False),
        sa.Column('content_hash', sa.String(length=64), nullable=False),
        sa.Column('storage_reference', sa.String(length=1024), nullable=False),
        sa.Column('public_url', sa.String(length=2048), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='uploaded'),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('owner_identity', sa.String(length=128), nullable=False),
        sa.Column('reviewer_identity', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint("status IN ('uploaded', 'accepted', 'rejected')", name='ck_documents_status'),
    )
    op.create_index('idx_documents_owner_hash', 'documents', ['owner_identity', 'content_hash'], unique=False)

    # audit_entries table (append-only)
    op.create_table(
        'audit_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.String(length=36), nullable=False),
        sa.Column('actor_identity', sa.String(length=128), nullable=False),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('detail_json', sa.Text(), nullable=False),
        sa.Column('request_id', sa.String(length=64), nullable=True),
        sa.Column('client_ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('client_signature', sa.String(length=1024), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_entries_document_created', 'audit_entries', ['document_id', 'created_at'], unique=False)

    # Postgres: refuse UPDATE/DELETE on the ledger at the database level too.
    if op.get_bind().dialect.name == 'postgresql':
        op.execute(
            """
            CREATE OR REPLACE FUNCTION audit_entries_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'audit_entries is append-only';
            END;
            $$ LANGUAGE plpgsql;
            """
        )
        op.execute(
            """
            CREATE TRIGGER trg_audit_entries_immutable
            BEFORE UPDATE OR DELETE ON audit_entries
            FOR EACH ROW EXECUTE FUNCTION audit_entries_immutable();
            """
        )


def downgrade() -> None:
    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_immutable ON audit_entries")
        op.execute("DROP FUNCTION IF EXISTS audit_entries_immutable()")
    op.drop_index('idx_audit_entries_document_created', table_name='audit_entries')
    op.drop_table('audit_entries')
    op.drop_index('idx_documents_owner_hash', table_name='documents')
    op.drop_table('documents')
