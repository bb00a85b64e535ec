"""create portal tables

Revision ID: 3a7c1e9d2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3a7c1e9d2b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('user_id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=128), nullable=False, unique=True),
        sa.Column('email', sa.String(length=128), nullable=True),
        sa.Column('password_hash', sa.String(length=256), nullable=True),
        sa.Column('role', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'classes',
        sa.Column('class_id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('grade_level', sa.String(length=32), nullable=True),
        sa.Column('academic_year', sa.String(length=16), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'students',
        sa.Column('student_id', sa.Integer(), primary_key=True),
        sa.Column('user_id_fk', sa.Integer(), nullable=True),
        sa.Column('class_id_fk', sa.Integer(), nullable=True),
        sa.Column('reg_no', sa.String(length=32), nullable=False, unique=True),
        sa.Column('first_name', sa.String(length=64), nullable=True),
        sa.Column('last_name', sa.String(length=64), nullable=True),
        sa.Column('student_type', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['user_id_fk'], ['users.user_id']),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
    )

    op.create_table(
        'subjects',
        sa.Column('subject_id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.text('1')),
    )

    op.create_table(
        'assessments',
        sa.Column('assessment_id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.Column('term', sa.String(length=16), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('assessment_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
    )

    op.create_table(
        'assessment_results',
        sa.Column('result_id', sa.Integer(), primary_key=True),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('assessment_id_fk', sa.Integer(), nullable=False),
        sa.Column('subject_id_fk', sa.Integer(), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('max_marks', sa.Float(), nullable=False),
        sa.Column('assessment_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['assessment_id_fk'], ['assessments.assessment_id']),
        sa.ForeignKeyConstraint(['subject_id_fk'], ['subjects.subject_id']),
        sa.UniqueConstraint(
            'student_id_fk',
            'assessment_id_fk',
            'subject_id_fk',
            name='uq_result_student_assessment_subject',
        ),
        sa.CheckConstraint('score <= max_marks', name='ck_result_score_within_max'),
    )
    op.create_index(
        'ix_assessment_results_assessment_id_fk',
        'assessment_results',
        ['assessment_id_fk'],
    )

    op.create_table(
        'fee_structures',
        sa.Column('structure_id', sa.Integer(), primary_key=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('student_type', sa.String(length=32), nullable=False),
        sa.Column('term', sa.String(length=16), nullable=True),
        sa.Column('academic_year', sa.String(length=16), nullable=True),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'fee_structure_classes',
        sa.Column('mapping_id', sa.Integer(), primary_key=True),
        sa.Column('fee_structure_id_fk', sa.Integer(), nullable=False),
        sa.Column('class_id_fk', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['fee_structure_id_fk'], ['fee_structures.structure_id']),
        sa.ForeignKeyConstraint(['class_id_fk'], ['classes.class_id']),
        sa.UniqueConstraint('fee_structure_id_fk', 'class_id_fk', name='uq_fee_structure_class'),
    )

    op.create_table(
        'student_fees',
        sa.Column('student_fee_id', sa.Integer(), primary_key=True),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('fee_structure_id_fk', sa.Integer(), nullable=False),
        sa.Column('total_billed', sa.Numeric(12, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('total_paid', sa.Numeric(12, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('outstanding_balance', sa.Numeric(12, 2), nullable=False, server_default=sa.text('0')),
        sa.Column('status', sa.String(length=16), nullable=True),
        sa.Column('last_payment_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['fee_structure_id_fk'], ['fee_structures.structure_id']),
        sa.UniqueConstraint('student_id_fk', 'fee_structure_id_fk', name='uq_student_fee_structure'),
    )

    op.create_table(
        'payments',
        sa.Column('payment_id', sa.Integer(), primary_key=True),
        sa.Column('student_id_fk', sa.Integer(), nullable=False),
        sa.Column('fee_structure_id_fk', sa.Integer(), nullable=True),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_date', sa.Date(), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=True),
        sa.Column('reference_no', sa.String(length=64), nullable=True),
        sa.Column('term', sa.String(length=16), nullable=True),
        sa.Column('academic_year', sa.String(length=16), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['student_id_fk'], ['students.student_id']),
        sa.ForeignKeyConstraint(['fee_structure_id_fk'], ['fee_structures.structure_id']),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.user_id']),
    )
    op.create_index('ix_payments_student_id_fk', 'payments', ['student_id_fk'])


def downgrade():
    op.drop_index('ix_payments_student_id_fk', table_name='payments')
    op.drop_table('payments')
    op.drop_table('student_fees')
    op.drop_table('fee_structure_classes')
    op.drop_table('fee_structures')
    op.drop_index('ix_assessment_results_assessment_id_fk', table_name='assessment_results')
    op.drop_table('assessment_results')
    op.drop_table('assessments')
    op.drop_table('subjects')
    op.drop_table('students')
    op.drop_table('classes')
    op.drop_table('users')
