"""Encrypted documents and secret entries

Revision ID: 001_documents_and_secrets
Revises: 
Create Date: 2026-10-17

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001_documents_and_secrets'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Documents: one row per stored document, body is the encrypted storage shape
    op.create_table('documents',
        sa.Column('collection', sa.String(64), primary_key=True),
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('body', postgresql.JSONB(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('idx_documents_body', 'documents', ['body'], postgresql_using='gin')

    # Secret entries: key material and per-category current pointers
    op.create_table('secret_entries',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('algorithm', sa.String(32), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('secret_entries')
    op.drop_index('idx_documents_body', table_name='documents')
    op.drop_table('documents')
