"""
Central Database Module for Sollar
Provides canonical get_db() function, database path resolution and the schema.

Nothing outside this module opens connections. Tenant filtering is not done
here: every tenant-owned read and write goes through tenant_store.TenantScope.
"""
import sqlite3
import os
from contextlib import contextmanager

from errors import StoreUnavailable
from logging_config import get_logger

logger = get_logger(__name__)


PLAN_TIERS = ('base', 'intermediate', 'advanced')
ASSESSMENT_STATUSES = ('draft', 'active', 'completed', 'archived')
QUESTIONNAIRE_STATUSES = ('draft', 'published', 'archived')
QUESTION_TYPES = ('likert_scale', 'single_choice', 'yes_no', 'text')

# Sollar 8-block structure
RISK_CATEGORIES = (
    'demands_and_pace',
    'autonomy_clarity_change',
    'leadership_recognition',
    'relationships_communication',
    'work_life_health',
    'violence_harassment',
    'anchors',
    'suggestions',
)


def _get_db_path():
    """
    Determine database path, respecting environment variable.

    Priority:
    1. DB_PATH environment variable (for tests and custom configs)
    2. Render persistent disk (/var/data) if it exists
    3. Local file (sollar.db)
    """
    if 'DB_PATH' in os.environ:
        return os.environ['DB_PATH']

    RENDER_DISK_PATH = "/var/data"
    if os.path.exists(RENDER_DISK_PATH):
        return os.path.join(RENDER_DISK_PATH, "sollar.db")

    return "sollar.db"


DB_PATH = _get_db_path()


def _connect():
    # Check environment at runtime for test support
    db_path = os.environ.get('DB_PATH', DB_PATH)
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # SQLite has foreign keys DISABLED by default
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def get_db():
    """
    Context manager for database connection.

    - Enables foreign keys (for CASCADE DELETE)
    - Sets WAL mode (readers see a consistent snapshot while writers commit)
    - Provides Row factory (for dict-like access)
    - Auto-commits on success, auto-closes connection
    - Maps operational failures to StoreUnavailable

    Usage:
        with get_db() as conn:
            rows = conn.execute("SELECT * FROM organizations").fetchall()
    """
    try:
        conn = _connect()
    except sqlite3.Error as e:
        logger.error("Database connection failed", extra={'extra_data': {'error': str(e)}})
        raise StoreUnavailable() from e

    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
        conn.rollback()
        logger.error("Database operation failed", extra={'extra_data': {'error': str(e)}})
        raise StoreUnavailable() from e
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextmanager
def snapshot():
    """
    Read-only connection inside one explicit transaction.

    Every SELECT issued on the yielded connection sees the same committed
    state, so counts and values derived from it always agree.
    """
    with get_db() as conn:
        conn.execute("BEGIN")
        yield conn


def init_db():
    """Create all tables if they do not exist."""
    with get_db() as conn:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS organizations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                plan_tier TEXT NOT NULL DEFAULT 'base'
                    CHECK(plan_tier IN {PLAN_TIERS}),
                industry TEXT,
                size TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP
            )
        """)

        # One organization per profile; role and tenant are read from here only
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_profiles (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                full_name TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'member'
                    CHECK(role IN ('viewer', 'member', 'manager', 'admin')),
                is_active INTEGER DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_login TIMESTAMP,
                FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS departments (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                parent_id TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
                FOREIGN KEY (parent_id) REFERENCES departments(id) ON DELETE SET NULL
            )
        """)

        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS questionnaires (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'draft'
                    CHECK(status IN {QUESTIONNAIRE_STATUSES}),
                created_by TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
                FOREIGN KEY (created_by) REFERENCES user_profiles(id) ON DELETE SET NULL
            )
        """)

        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS questions (
                id TEXT PRIMARY KEY,
                questionnaire_id TEXT NOT NULL,
                text TEXT NOT NULL,
                question_type TEXT NOT NULL DEFAULT 'likert_scale'
                    CHECK(question_type IN {QUESTION_TYPES}),
                category TEXT CHECK(category IS NULL OR category IN {RISK_CATEGORIES}),
                risk_inverted INTEGER DEFAULT 1,
                min_value INTEGER DEFAULT 1,
                max_value INTEGER DEFAULT 5,
                order_index INTEGER DEFAULT 0,
                is_required INTEGER DEFAULT 1,
                FOREIGN KEY (questionnaire_id) REFERENCES questionnaires(id) ON DELETE CASCADE
            )
        """)

        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS assessments (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                questionnaire_id TEXT NOT NULL,
                department_id TEXT,
                title TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'draft'
                    CHECK(status IN {ASSESSMENT_STATUSES}),
                start_date TIMESTAMP,
                end_date TIMESTAMP,
                created_by TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                FOREIGN KEY (organization_id) REFERENCES organizations(id) ON DELETE CASCADE,
                FOREIGN KEY (questionnaire_id) REFERENCES questionnaires(id) ON DELETE CASCADE,
                FOREIGN KEY (department_id) REFERENCES departments(id) ON DELETE SET NULL,
                FOREIGN KEY (created_by) REFERENCES user_profiles(id) ON DELETE SET NULL
            )
        """)

        # Responses carry no identity. anonymous_id is generated by the survey
        # front end per submission session and is not stored anywhere else.
        conn.execute("""
            CREATE TABLE IF NOT EXISTS responses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                assessment_id TEXT NOT NULL,
                question_id TEXT NOT NULL,
                anonymous_id TEXT NOT NULL,
                department_id TEXT,
                value TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                FOREIGN KEY (assessment_id) REFERENCES assessments(id) ON DELETE CASCADE,
                FOREIGN KEY (question_id) REFERENCES questions(id) ON DELETE CASCADE,
                FOREIGN KEY (department_id) REFERENCES departments(id) ON DELETE SET NULL,
                UNIQUE(assessment_id, question_id, anonymous_id)
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_org ON user_profiles(organization_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_departments_org ON departments(organization_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_questionnaires_org ON questionnaires(organization_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_questions_questionnaire ON questions(questionnaire_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_assessments_org ON assessments(organization_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_responses_assessment ON responses(assessment_id)")
