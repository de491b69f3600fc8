"""Create otp_records table

Revision ID: 0001_otp_records
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_otp_records'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'otp_records',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('code', sa.Text(), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('origin_address', sa.Text(), nullable=True),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id', name='pk_otp_records'),
    )
    op.create_index('ix_otp_records_lookup', 'otp_records', ['email', 'code', 'verified'])
    op.create_index('ix_otp_records_issued_at', 'otp_records', ['issued_at'])


def downgrade() -> None:
    op.drop_index('ix_otp_records_issued_at', table_name='otp_records')
    op.drop_index('ix_otp_records_lookup', table_name='otp_records')
    op.drop_table('otp_records')
