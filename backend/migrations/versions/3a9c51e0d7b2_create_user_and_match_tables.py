"""create user, match, match_lock and match_participant tables

Revision ID: 3a9c51e0d7b2
Revises:
Create Date: 2026-01-05 10:12:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a9c51e0d7b2'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa.inspect(bind).get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('display_name', sa.String(length=64), nullable=True),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'match',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('game_type', sa.String(length=32), nullable=False),
        sa.Column('match_format', sa.Integer(), nullable=False),
        sa.Column('challenger_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('receiver_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('challenge_expires_at', sa.DateTime(), nullable=True),
        sa.Column('join_window_expires_at', sa.DateTime(), nullable=True),
        sa.Column('current_player_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('challenger_score', sa.Integer(), nullable=True),
        sa.Column('receiver_score', sa.Integer(), nullable=True),
        sa.Column('turn_index_in_leg', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_leg', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('challenger_legs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('receiver_legs', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('leg_starter_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('last_visit_payload', sa.Text(), nullable=True),
        sa.Column('winner_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('ended_by', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('ended_reason', sa.String(length=32), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_match_status', 'match', ['status'])
    op.create_index('ix_match_challenger_id', 'match', ['challenger_id'])
    op.create_index('ix_match_receiver_id', 'match', ['receiver_id'])

    # user_id as primary key: at most one lock per user
    op.create_table(
        'match_lock',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('match_id', sa.String(length=36), sa.ForeignKey('match.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lock_status', sa.String(length=32), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('user_id'),
    )
    op.create_index('ix_match_lock_match_id', 'match_lock', ['match_id'])

    op.create_table(
        'match_participant',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('match_id', sa.String(length=36), sa.ForeignKey('match.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('player_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('match_id', 'user_id', name='uq_match_participant_match_user'),
    )
    op.create_index('ix_match_participant_match_id', 'match_participant', ['match_id'])


def downgrade():
    op.drop_index('ix_match_participant_match_id', table_name='match_participant')
    op.drop_table('match_participant')
    op.drop_index('ix_match_lock_match_id', table_name='match_lock')
    op.drop_table('match_lock')
    op.drop_index('ix_match_receiver_id', table_name='match')
    op.drop_index('ix_match_challenger_id', table_name='match')
    op.drop_index('ix_match_status', table_name='match')
    op.drop_table('match')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
