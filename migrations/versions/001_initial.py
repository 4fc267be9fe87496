"""Initial schema for the school portal: accounts, students and form drafts.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the portal tables and indexes."""

    # Users table with roles: super_admin, school_admin, teacher, student
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT DEFAULT 'student',
                    school_id TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS schools (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT UNIQUE NOT NULL,
                    school_name TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS students (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    student_id TEXT NOT NULL,
                    firstname TEXT,
                    classname TEXT,
                    parent_name TEXT,
                    phone TEXT,
                    email TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(school_id, student_id)
                )''')

    # Draft records keyed by owner + prefixed form id; value is the JSON record
    op.execute('''CREATE TABLE IF NOT EXISTS form_drafts (
                    owner TEXT NOT NULL,
                    storage_key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (owner, storage_key)
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_students_school_class ON students(school_id, classname)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_users_username_lower ON users(LOWER(username))')
    op.execute('CREATE INDEX IF NOT EXISTS idx_form_drafts_owner_updated ON form_drafts(owner, updated_at)')

    op.execute('''DO $$
                  BEGIN
                      IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'fk_students_school') THEN
                          ALTER TABLE students ADD CONSTRAINT fk_students_school
                              FOREIGN KEY (school_id) REFERENCES schools(school_id) ON DELETE CASCADE NOT VALID;
                      END IF;
                  END $$''')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS form_drafts CASCADE')
    op.execute('DROP TABLE IF EXISTS students CASCADE')
    op.execute('DROP TABLE IF EXISTS users CASCADE')
    op.execute('DROP TABLE IF EXISTS schools CASCADE')
