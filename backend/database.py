import logging

import psycopg2
from fastapi import HTTPException
from psycopg2.extras import RealDictCursor

from config import settings

logger = logging.getLogger(__name__)


def get_db_connection():
    try:
        conn = psycopg2.connect(
            dbname=settings.POSTGRES_DB,
            user=settings.POSTGRES_USER,
            password=settings.POSTGRES_PASSWORD,
            host=settings.POSTGRES_HOST,
            port=settings.POSTGRES_PORT,
            connect_timeout=settings.POSTGRES_CONNECT_TIMEOUT,
            cursor_factory=RealDictCursor
        )
        return conn
    except psycopg2.OperationalError as e:
        logger.error(f"Error connecting to database: {e}")
        return None


def throw_db_error(e=None):
    if e:
        logger.error(f"DB Error: {e}")
    raise HTTPException(status_code=500, detail="Database connection failed")


SCHEMA = [
    # 1. Users Table
    """
    CREATE TABLE IF NOT EXISTS users (
        id SERIAL PRIMARY KEY,
        full_name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        password TEXT NOT NULL,
        student_id TEXT UNIQUE NOT NULL,
        year TEXT NOT NULL DEFAULT '',
        department TEXT,
        role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('student', 'admin')),
        approved BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # 2. Elections Table
    """
    CREATE TABLE IF NOT EXISTS elections (
        id SERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        start_date TIMESTAMPTZ NOT NULL,
        end_date TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft'
            CHECK (status IN ('draft', 'active', 'completed', 'cancelled')),
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT election_window CHECK (end_date > start_date)
    );
    """,
    # 3. Positions Table
    """
    CREATE TABLE IF NOT EXISTS positions (
        id SERIAL PRIMARY KEY,
        election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        max_selections INTEGER NOT NULL DEFAULT 1 CHECK (max_selections >= 1),
        sort_order INTEGER NOT NULL DEFAULT 0
    );
    """,
    # 4. Candidates Table
    """
    CREATE TABLE IF NOT EXISTS candidates (
        id SERIAL PRIMARY KEY,
        position_id INTEGER NOT NULL REFERENCES positions(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        student_id TEXT NOT NULL DEFAULT '',
        manifesto TEXT NOT NULL DEFAULT '',
        image_url TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
    );
    """,
    # 5. Votes Table: one voter record per (user, election, position)
    """
    CREATE TABLE IF NOT EXISTS votes (
        id SERIAL PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        election_id INTEGER NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
        position_id INTEGER NOT NULL REFERENCES positions(id) ON DELETE CASCADE,
        voted_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT unique_position_vote UNIQUE (user_id, election_id, position_id)
    );
    """,
    # 6. Candidates picked on each voter record
    """
    CREATE TABLE IF NOT EXISTS vote_selections (
        vote_id INTEGER NOT NULL REFERENCES votes(id) ON DELETE CASCADE,
        candidate_id INTEGER NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
        PRIMARY KEY (vote_id, candidate_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_vote_selections_candidate ON vote_selections (candidate_id);",
    "CREATE INDEX IF NOT EXISTS idx_votes_election ON votes (election_id);",
]


def init_db(admin_password_hash=None):
    """Creates the tables if missing and seeds the bootstrap admin account."""
    conn = get_db_connection()
    if not conn:
        logger.error("Failed to connect to the database.")
        return

    cur = conn.cursor()
    try:
        for statement in SCHEMA:
            cur.execute(statement)

        # Seed an admin ONLY if none exists yet
        cur.execute("SELECT COUNT(*) AS count FROM users WHERE role = 'admin'")
        if admin_password_hash and cur.fetchone()['count'] == 0:
            logger.info(f"Creating bootstrap admin {settings.ADMIN_EMAIL}")
            cur.execute(
                """
                INSERT INTO users (full_name, email, password, student_id, year, role, approved)
                VALUES (%s, %s, %s, %s, %s, 'admin', TRUE)
                ON CONFLICT (email) DO NOTHING
                """,
                (settings.ADMIN_FULL_NAME, settings.ADMIN_EMAIL, admin_password_hash, "ADMIN001", "N/A")
            )

        conn.commit()
        logger.info("Database checked/initialized successfully.")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        conn.rollback()
        raise
    finally:
        cur.close()
        conn.close()


# --- Election tree loading ---

def fetch_elections_tree(cur, where="", params=()):
    """Loads elections with nested positions and candidates.

    Candidate ``votes`` are counted from ``vote_selections``; they are never
    stored on the candidate row.
    """
    cur.execute(f"SELECT * FROM elections {where} ORDER BY created_at DESC, id DESC", params)
    elections = [dict(row) for row in cur.fetchall()]
    if not elections:
        return []

    election_ids = [e['id'] for e in elections]

    cur.execute(
        "SELECT * FROM positions WHERE election_id = ANY(%s) ORDER BY sort_order, id",
        (election_ids,)
    )
    positions = [dict(row) for row in cur.fetchall()]

    cur.execute(
        """
        SELECT c.*, p.election_id, COUNT(vs.vote_id) AS votes
        FROM candidates c
        JOIN positions p ON p.id = c.position_id
        LEFT JOIN vote_selections vs ON vs.candidate_id = c.id
        WHERE p.election_id = ANY(%s)
        GROUP BY c.id, p.election_id
        ORDER BY c.id
        """,
        (election_ids,)
    )
    candidates_by_position = {}
    for row in cur.fetchall():
        candidates_by_position.setdefault(row['position_id'], []).append(dict(row))

    cur.execute(
        """
        SELECT election_id, COUNT(DISTINCT user_id) AS voter_count
        FROM votes
        WHERE election_id = ANY(%s)
        GROUP BY election_id
        """,
        (election_ids,)
    )
    voter_counts = {row['election_id']: row['voter_count'] for row in cur.fetchall()}

    positions_by_election = {}
    for position in positions:
        position['candidates'] = candidates_by_position.get(position['id'], [])
        positions_by_election.setdefault(position['election_id'], []).append(position)

    for election in elections:
        election['positions'] = positions_by_election.get(election['id'], [])
        election['voter_count'] = voter_counts.get(election['id'], 0)
    return elections


def fetch_election_tree(cur, election_id):
    elections = fetch_elections_tree(cur, "WHERE id = %s", (election_id,))
    return elections[0] if elections else None


def count_eligible_voters(cur):
    """Approved students are the electorate of every election."""
    cur.execute("SELECT COUNT(*) AS count FROM users WHERE role = 'student' AND approved = TRUE")
    return cur.fetchone()['count']
