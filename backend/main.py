from fastapi import FastAPI, HTTPException, status, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from fastapi.staticfiles import StaticFiles
from datetime import datetime, timedelta, timezone
from typing import List, Optional
import base64
import logging
import os
import uuid
import psycopg2

# Import local modules
import voting
from auth import (
    create_access_token, get_current_admin_user, get_current_user,
    get_password_hash, verify_password
)
from config import settings
from database import (
    count_eligible_voters, fetch_election_tree, fetch_elections_tree,
    get_db_connection, init_db, throw_db_error
)
from models import (
    UserRegister, UserLogin, UserUpdate, UserResponse, Token,
    CandidateIn, CandidateUpdate, CandidateResponse, PositionIn,
    ElectionCreate, ElectionUpdate, ElectionStatusUpdate, ElectionResponse,
    VoteRequest, VoteResponse, ElectionResult, HealthResponse
)
from voting import VoteRejected

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.SERVICE_NAME)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Candidate photos are served from here
UPLOAD_DIR = settings.UPLOAD_DIR

if not os.path.exists(UPLOAD_DIR):
    os.makedirs(UPLOAD_DIR)
    logger.info(f"Created uploads directory at: {UPLOAD_DIR}")

app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")

USER_COLUMNS = "id, full_name, email, student_id, year, department, role, approved, created_at"

@app.on_event("startup")
def startup_event():
    init_db(admin_password_hash=get_password_hash(settings.ADMIN_PASSWORD))

# --- Helper Functions ---

def server_error(e):
    logger.error(f"Server error: {e}")
    raise HTTPException(status_code=500, detail="Server error")

def save_candidate_image(raw_image_data: Optional[str]) -> Optional[str]:
    """Decodes a base64 ``data:image/...`` URL into UPLOAD_DIR and returns its public URL."""
    if not raw_image_data or not str(raw_image_data).startswith("data:image"):
        return None

    clean_base64 = raw_image_data.strip()
    header = ""
    if "," in clean_base64:
        header, encoded = clean_base64.split(",", 1)
    else:
        encoded = clean_base64

    # Decoded size, estimated from the base64 length
    if len(encoded) * 3 // 4 > settings.MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Candidate image too large")

    try:
        data = base64.b64decode(encoded, validate=True)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid candidate image")

    ext = "jpg"
    if "png" in header.lower(): ext = "png"
    elif "webp" in header.lower(): ext = "webp"

    filename = f"cand_{uuid.uuid4()}.{ext}"
    filepath = os.path.join(UPLOAD_DIR, filename)
    with open(filepath, "wb") as f:
        f.write(data)

    image_url = f"{settings.PUBLIC_BASE_URL}/uploads/{filename}"
    logger.info(f"Candidate image saved: {image_url}")
    return image_url

def remove_candidate_image(image_url: Optional[str]):
    """Deletes a previously uploaded photo; external URLs are left alone."""
    if not image_url or "/uploads/" not in image_url:
        return
    filepath = os.path.join(UPLOAD_DIR, image_url.rsplit("/", 1)[-1])
    if os.path.exists(filepath):
        os.remove(filepath)

class PhotoChanges:
    """Photo files touched by one request.

    Files only leave the disk once the transaction that stops referencing
    them has committed. New uploads are removed again if it rolls back.
    """

    def __init__(self):
        self.saved = []
        self.discarded = []

    def committed(self):
        for image_url in self.discarded:
            remove_candidate_image(image_url)
        self.saved, self.discarded = [], []

    def rolled_back(self):
        for image_url in self.saved:
            remove_candidate_image(image_url)
        self.saved, self.discarded = [], []

def resolve_candidate_image(candidate, photos: PhotoChanges, current_url: str = "") -> str:
    raw_image_data = candidate.image_base64 or candidate.image_url
    saved = save_candidate_image(raw_image_data)
    if saved:
        photos.saved.append(saved)
        if current_url:
            photos.discarded.append(current_url)
        return saved
    if candidate.image_url is not None:
        if current_url and candidate.image_url != current_url:
            photos.discarded.append(current_url)
        return candidate.image_url
    return current_url

def insert_candidate(cur, position_id: int, candidate: CandidateIn, photos: PhotoChanges):
    image_url = resolve_candidate_image(candidate, photos)
    cur.execute(
        """
        INSERT INTO candidates (position_id, name, student_id, manifesto, image_url)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING *
        """,
        (position_id, candidate.name, candidate.student_id, candidate.manifesto, image_url)
    )
    return cur.fetchone()

def insert_position(cur, election_id: int, position: PositionIn, sort_order: int, photos: PhotoChanges):
    cur.execute(
        """
        INSERT INTO positions (election_id, title, description, max_selections, sort_order)
        VALUES (%s, %s, %s, %s, %s)
        RETURNING id
        """,
        (election_id, position.title, position.description, position.max_selections, sort_order)
    )
    position_id = cur.fetchone()['id']
    for candidate in position.candidates:
        insert_candidate(cur, position_id, candidate, photos)
    return position_id

def sync_candidates(cur, position_id: int, candidates: List[CandidateIn], photos: PhotoChanges):
    cur.execute("SELECT id, image_url FROM candidates WHERE position_id = %s", (position_id,))
    existing = {row['id']: row['image_url'] for row in cur.fetchall()}
    kept = set()
    for candidate in candidates:
        if candidate.id is None:
            insert_candidate(cur, position_id, candidate, photos)
            continue
        if candidate.id not in existing:
            raise HTTPException(status_code=404, detail=f"Candidate {candidate.id} not found in this position")
        image_url = resolve_candidate_image(candidate, photos, existing[candidate.id])
        cur.execute(
            """
            UPDATE candidates SET name = %s, student_id = %s, manifesto = %s, image_url = %s
            WHERE id = %s
            """,
            (candidate.name, candidate.student_id, candidate.manifesto, image_url, candidate.id)
        )
        kept.add(candidate.id)

    stale = [cid for cid in existing if cid not in kept]
    if stale:
        cur.execute("DELETE FROM candidates WHERE id = ANY(%s)", (stale,))
        photos.discarded.extend(existing[cid] for cid in stale)

def sync_positions(cur, election_id: int, positions: List[PositionIn], photos: PhotoChanges):
    """Updates positions by id, inserts new ones and deletes those not sent.

    Deleting a position or candidate also deletes the votes recorded for it.
    """
    cur.execute("SELECT id FROM positions WHERE election_id = %s", (election_id,))
    existing = {row['id'] for row in cur.fetchall()}
    kept = set()
    for order, position in enumerate(positions):
        if position.id is None:
            insert_position(cur, election_id, position, order, photos)
            continue
        if position.id not in existing:
            raise HTTPException(status_code=404, detail=f"Position {position.id} not found in this election")
        cur.execute(
            """
            UPDATE positions SET title = %s, description = %s, max_selections = %s, sort_order = %s
            WHERE id = %s
            """,
            (position.title, position.description, position.max_selections, order, position.id)
        )
        sync_candidates(cur, position.id, position.candidates, photos)
        kept.add(position.id)

    stale = [pid for pid in existing if pid not in kept]
    if stale:
        cur.execute(
            "SELECT image_url FROM candidates WHERE position_id = ANY(%s)", (stale,)
        )
        photos.discarded.extend(row['image_url'] for row in cur.fetchall())
        cur.execute("DELETE FROM positions WHERE id = ANY(%s)", (stale,))

def load_election(cur, election_id: int, with_eligible: bool = True):
    election = fetch_election_tree(cur, election_id)
    if not election:
        raise HTTPException(status_code=404, detail="Election not found")
    if with_eligible:
        election['eligible_voter_count'] = count_eligible_voters(cur)
    return election

def authenticate_user(email: str, password: str):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute("SELECT * FROM users WHERE email = %s", (email,))
        user = cur.fetchone()
    finally:
        cur.close()
        conn.close()

    if not user or not verify_password(password, user['password']):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user['role'] == 'student' and not user['approved']:
        raise HTTPException(status_code=403, detail="Your account is pending approval")
    return user

def issue_token(user: dict) -> dict:
    access_token_expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user['email'], "role": user['role']}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer", "role": user['role']}

# --- Health ---

@app.get("/health", response_model=HealthResponse)
def health():
    conn = get_db_connection()
    if not conn:
        raise HTTPException(status_code=503, detail="Database unavailable")
    cur = conn.cursor()
    try:
        cur.execute("SELECT 1")
    finally:
        cur.close()
        conn.close()
    return {"status": "healthy", "database": "connected", "timestamp": datetime.now(timezone.utc)}

# --- Auth Endpoints ---

@app.post("/users/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(user: UserRegister):
    """New students start unapproved; an admin must approve them before they can log in."""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute(
            "SELECT email, student_id FROM users WHERE email = %s OR student_id = %s",
            (user.email, user.student_id)
        )
        clashes = cur.fetchall()
        if any(row['email'] == user.email for row in clashes):
            logger.info(f"Registration failed: Email {user.email} already exists")
            raise HTTPException(status_code=400, detail="User already exists with this email")
        if clashes:
            logger.info(f"Registration failed: Student ID {user.student_id} already exists")
            raise HTTPException(status_code=400, detail="Student ID already registered")

        cur.execute(
            f"""
            INSERT INTO users (full_name, email, password, student_id, year, department, role, approved)
            VALUES (%s, %s, %s, %s, %s, %s, 'student', FALSE)
            RETURNING {USER_COLUMNS}
            """,
            (user.full_name, user.email, get_password_hash(user.password),
             user.student_id, user.year, user.department)
        )
        new_user = cur.fetchone()
        conn.commit()
        logger.info(f"User registered successfully: {user.email}, {user.student_id}")
        return new_user
    except HTTPException:
        conn.rollback()
        raise
    except psycopg2.IntegrityError:
        # Lost a race with a concurrent registration
        conn.rollback()
        raise HTTPException(status_code=400, detail="User already exists")
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

# Compatible with OAuth2 standard form (username, password)
@app.post("/token", response_model=Token)
def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    # OAuth2 spec uses 'username' field, but we treat it as email
    user = authenticate_user(form_data.username, form_data.password)
    return issue_token(user)

@app.post("/users/login", response_model=Token)
def login_json(user_login: UserLogin):
    """JSON body login endpoint for the frontend"""
    user = authenticate_user(user_login.email, user_login.password)
    return issue_token(user)

@app.get("/users/me", response_model=UserResponse)
def read_users_me(current_user: dict = Depends(get_current_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        me = dict(current_user)
        me['votes'] = voting.user_votes(cur, current_user['id'])
        return me
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

# --- User Management (Admin) ---

@app.get("/users", response_model=List[UserResponse])
def get_users(role: Optional[str] = None, approved: Optional[bool] = None,
              admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        filters, params = [], []
        if role is not None:
            filters.append("role = %s")
            params.append(role)
        if approved is not None:
            filters.append("approved = %s")
            params.append(approved)
        where = f"WHERE {' AND '.join(filters)}" if filters else ""
        cur.execute(f"SELECT {USER_COLUMNS} FROM users {where} ORDER BY created_at DESC, id DESC", params)
        return cur.fetchall()
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.put("/users/{id}/approve", response_model=UserResponse)
def approve_user(id: int, admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute(f"UPDATE users SET approved = TRUE WHERE id = %s RETURNING {USER_COLUMNS}", (id,))
        user = cur.fetchone()
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        conn.commit()
        logger.info(f"User {user['email']} approved by {admin['email']}")
        return user
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.put("/users/{id}", response_model=UserResponse)
def update_user(id: int, user: UserUpdate, admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        # Build dynamic update query
        update_data = user.model_dump(exclude_unset=True)
        if not update_data:
            raise HTTPException(status_code=400, detail="No data provided to update")

        set_clause = ", ".join([f"{key} = %s" for key in update_data.keys()])
        values = list(update_data.values())
        values.append(id)

        cur.execute(f"UPDATE users SET {set_clause} WHERE id = %s RETURNING {USER_COLUMNS}", values)
        updated = cur.fetchone()
        if not updated:
            raise HTTPException(status_code=404, detail="User not found")
        conn.commit()
        return updated
    except HTTPException:
        conn.rollback()
        raise
    except psycopg2.IntegrityError:
        conn.rollback()
        raise HTTPException(status_code=400, detail="Email or student ID already in use")
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.delete("/users/{id}")
def delete_user(id: int, admin: dict = Depends(get_current_admin_user)):
    if id == admin['id']:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute("DELETE FROM users WHERE id = %s RETURNING id", (id,))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="User not found")
        conn.commit()
        return {"msg": "User removed"}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

# --- Election Endpoints (Public Read, Admin Write) ---

@app.get("/elections", response_model=List[ElectionResponse])
def get_elections():
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        return fetch_elections_tree(cur)
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.get("/elections/active", response_model=List[ElectionResponse])
def get_active_elections():
    """Elections flagged active whose voting window contains now"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        now = voting.utc_now()
        return fetch_elections_tree(
            cur, "WHERE status = 'active' AND start_date <= %s AND end_date >= %s", (now, now)
        )
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.get("/elections/{id}", response_model=ElectionResponse)
def get_election_by_id(id: int):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        return load_election(cur, id)
    except HTTPException:
        raise
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.post("/elections", response_model=ElectionResponse, status_code=status.HTTP_201_CREATED)
def create_election(election: ElectionCreate, admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    photos = PhotoChanges()
    try:
        cur.execute(
            """
            INSERT INTO elections (title, description, start_date, end_date, status)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (election.title, election.description, election.start_date, election.end_date, election.status)
        )
        election_id = cur.fetchone()['id']
        for order, position in enumerate(election.positions):
            insert_position(cur, election_id, position, order, photos)
        conn.commit()
        photos.committed()
        logger.info(f"Election {election_id} '{election.title}' created by {admin['email']}")
        return load_election(cur, election_id)
    except HTTPException:
        conn.rollback()
        photos.rolled_back()
        raise
    except Exception as e:
        conn.rollback()
        photos.rolled_back()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.put("/elections/{id}", response_model=ElectionResponse)
def update_election(id: int, election: ElectionUpdate, admin: dict = Depends(get_current_admin_user)):
    """Partial update. When ``positions`` is sent the whole ballot is synchronised."""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    photos = PhotoChanges()
    try:
        cur.execute("SELECT * FROM elections WHERE id = %s FOR UPDATE", (id,))
        current = cur.fetchone()
        if not current:
            raise HTTPException(status_code=404, detail="Election not found")

        update_data = election.model_dump(exclude_unset=True, exclude={"positions"})
        start_date = update_data.get("start_date", current['start_date'])
        end_date = update_data.get("end_date", current['end_date'])
        if voting.as_utc(end_date) <= voting.as_utc(start_date):
            raise HTTPException(status_code=400, detail="End date must be after start date")

        update_data["updated_at"] = voting.utc_now()
        set_clause = ", ".join([f"{key} = %s" for key in update_data.keys()])
        values = list(update_data.values())
        values.append(id)
        cur.execute(f"UPDATE elections SET {set_clause} WHERE id = %s", values)

        if election.positions is not None:
            sync_positions(cur, id, election.positions, photos)

        conn.commit()
        photos.committed()
        return load_election(cur, id)
    except HTTPException:
        conn.rollback()
        photos.rolled_back()
        raise
    except Exception as e:
        conn.rollback()
        photos.rolled_back()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.patch("/elections/{id}/status")
def update_election_status(id: int, body: ElectionStatusUpdate, admin: dict = Depends(get_current_admin_user)):
    """Admin: Start, Complete or Cancel an election (Status Control)"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute(
            "UPDATE elections SET status = %s, updated_at = %s WHERE id = %s RETURNING id",
            (body.status, voting.utc_now(), id)
        )
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Election not found")
        conn.commit()
        logger.info(f"Election {id} status changed to {body.status} by {admin['email']}")
        updated = ElectionResponse.model_validate(load_election(cur, id))
        return {
            "status": "success",
            "election": updated.model_dump(by_alias=True),
            "message": f"Election status changed to: {body.status}"
        }
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.delete("/elections/{id}")
def delete_election(id: int, admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            SELECT c.image_url FROM candidates c
            JOIN positions p ON p.id = c.position_id
            WHERE p.election_id = %s
            """,
            (id,)
        )
        images = [row['image_url'] for row in cur.fetchall()]
        cur.execute("DELETE FROM elections WHERE id = %s RETURNING id", (id,))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Election not found")
        conn.commit()
        for image_url in images:
            remove_candidate_image(image_url)
        logger.info(f"Election {id} removed by {admin['email']}")
        return {"msg": "Election removed"}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

# --- Positions & Candidates (Admin) ---

@app.post("/elections/{id}/positions", response_model=ElectionResponse, status_code=status.HTTP_201_CREATED)
def add_position(id: int, position: PositionIn, admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    photos = PhotoChanges()
    try:
        cur.execute(
            """
            SELECT e.id, COALESCE(MAX(p.sort_order) + 1, 0) AS next_order
            FROM elections e LEFT JOIN positions p ON p.election_id = e.id
            WHERE e.id = %s GROUP BY e.id
            """,
            (id,)
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Election not found")
        insert_position(cur, id, position, row['next_order'], photos)
        conn.commit()
        photos.committed()
        return load_election(cur, id)
    except HTTPException:
        conn.rollback()
        photos.rolled_back()
        raise
    except Exception as e:
        conn.rollback()
        photos.rolled_back()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.post("/elections/{id}/positions/{position_id}/candidates", response_model=CandidateResponse,
          status_code=status.HTTP_201_CREATED)
def add_candidate(id: int, position_id: int, candidate: CandidateIn,
                  admin: dict = Depends(get_current_admin_user)):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    photos = PhotoChanges()
    try:
        cur.execute("SELECT id FROM positions WHERE id = %s AND election_id = %s", (position_id, id))
        if not cur.fetchone():
            raise HTTPException(status_code=404, detail="Position not found")
        row = insert_candidate(cur, position_id, candidate, photos)
        conn.commit()
        photos.committed()
        return row
    except HTTPException:
        conn.rollback()
        photos.rolled_back()
        raise
    except Exception as e:
        conn.rollback()
        photos.rolled_back()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.put("/candidates/{id}", response_model=CandidateResponse)
def update_candidate(id: int, candidate: CandidateUpdate, admin: dict = Depends(get_current_admin_user)):
    """Admin calls this to edit candidate details and potentially update the photo"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    photos = PhotoChanges()
    try:
        cur.execute("SELECT * FROM candidates WHERE id = %s", (id,))
        old_data = cur.fetchone()
        if not old_data:
            raise HTTPException(status_code=404, detail="Candidate not found")

        image_url = resolve_candidate_image(candidate, photos, old_data['image_url'])
        cur.execute(
            """
            UPDATE candidates
            SET name = %s, student_id = %s, manifesto = %s, image_url = %s
            WHERE id = %s RETURNING *
            """,
            (candidate.name or old_data['name'],
             old_data['student_id'] if candidate.student_id is None else candidate.student_id,
             old_data['manifesto'] if candidate.manifesto is None else candidate.manifesto,
             image_url, id)
        )
        row = dict(cur.fetchone())
        cur.execute("SELECT COUNT(*) AS votes FROM vote_selections WHERE candidate_id = %s", (id,))
        row['votes'] = cur.fetchone()['votes']
        conn.commit()
        photos.committed()
        return row
    except HTTPException:
        conn.rollback()
        photos.rolled_back()
        raise
    except Exception as e:
        conn.rollback()
        photos.rolled_back()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.delete("/candidates/{id}")
def delete_candidate(id: int, admin: dict = Depends(get_current_admin_user)):
    """Deletes candidate and their photo from storage"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        cur.execute("DELETE FROM candidates WHERE id = %s RETURNING image_url", (id,))
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="Candidate not found")
        conn.commit()
        remove_candidate_image(row['image_url'])
        return {"msg": "Candidate removed"}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

# --- Voting Logic ---

@app.post("/elections/{id}/vote", response_model=VoteResponse)
def vote(id: int, vote_req: VoteRequest, current_user: dict = Depends(get_current_user)):
    """One ballot per student per position, only while the election is open"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        receipt = voting.cast_vote(
            cur, current_user, id, vote_req.position_id, vote_req.selected_candidate_ids()
        )
        conn.commit()
        return {
            "message": "Vote cast successfully",
            "election_id": id,
            "position_id": receipt['position_id'],
            "candidate_ids": receipt['candidate_ids'],
            "voted_at": receipt['voted_at'],
            "user_votes": voting.user_votes(cur, current_user['id']),
        }
    except VoteRejected as e:
        conn.rollback()
        logger.warning(f"Vote rejected for user {current_user['id']} in election {id}: {e.detail}")
        raise HTTPException(status_code=e.status_code, detail=e.detail)
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.get("/elections/{id}/my-votes")
def get_my_votes(id: int, current_user: dict = Depends(get_current_user)):
    """``{positionId: [candidateId, ...]}`` for the positions the caller already voted on"""
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        return voting.user_votes(cur, current_user['id'], id).get(str(id), {})
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()

@app.get("/elections/{id}/results", response_model=ElectionResult)
def get_election_results(id: int):
    conn = get_db_connection()
    if not conn: throw_db_error()
    cur = conn.cursor()
    try:
        election = load_election(cur, id, with_eligible=False)
        return voting.build_results(election, count_eligible_voters(cur))
    except HTTPException:
        raise
    except Exception as e:
        server_error(e)
    finally:
        cur.close()
        conn.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
