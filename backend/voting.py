"""Vote casting and result tallying.

A voter record lives in ``votes`` and is unique per (user, election,
position); the candidates picked on it live in ``vote_selections``. Tallies
are always derived from those rows, so a candidate count can never drift from
the records that produced it.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class VoteRejected(Exception):
    """A vote that must not be recorded. Carries the HTTP status to answer with."""

    def __init__(self, detail: str, status_code: int = 400):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def election_is_open(election: dict, now: Optional[datetime] = None) -> bool:
    """True when the election is flagged active AND now is inside its window.

    An election still marked ``active`` after its end date is closed.
    """
    now = as_utc(now or utc_now())
    if election['status'] != 'active':
        return False
    return as_utc(election['start_date']) <= now <= as_utc(election['end_date'])


def normalize_selection(position: dict, candidate_ids: List[int]) -> List[int]:
    """Validates the candidates picked for one position and returns them in order."""
    if not candidate_ids:
        raise VoteRejected("Please select at least one candidate")

    if len(set(candidate_ids)) != len(candidate_ids):
        raise VoteRejected("The same candidate cannot be selected twice")

    max_selections = position.get('max_selections') or 1
    if len(candidate_ids) > max_selections:
        raise VoteRejected(
            f"You can select at most {max_selections} candidate(s) for this position"
        )

    valid_ids = {c['id'] for c in position.get('candidates', [])}
    for candidate_id in candidate_ids:
        if candidate_id not in valid_ids:
            raise VoteRejected("Candidate not found", status_code=404)

    return list(candidate_ids)


def cast_vote(cur, user: dict, election_id: int, position_id: int,
              candidate_ids: List[int], now: Optional[datetime] = None) -> dict:
    """Records one ballot for ``position_id`` inside the caller's transaction.

    The caller commits on success and rolls back on ``VoteRejected``. The
    "already voted" decision is made by the unique index on
    (user_id, election_id, position_id), so two concurrent ballots from the
    same student cannot both be recorded.
    """
    now = as_utc(now or utc_now())

    if user['role'] == 'admin':
        raise VoteRejected("Administrators are not allowed to vote in elections", status_code=403)
    if not user.get('approved'):
        raise VoteRejected("Your account is pending approval", status_code=403)

    # Blocks status/date edits until this ballot commits
    cur.execute("SELECT * FROM elections WHERE id = %s FOR SHARE", (election_id,))
    election = cur.fetchone()
    if not election:
        raise VoteRejected("Election not found", status_code=404)
    if not election_is_open(election, now):
        raise VoteRejected("Election is not active")

    cur.execute(
        "SELECT * FROM positions WHERE id = %s AND election_id = %s",
        (position_id, election_id)
    )
    position = cur.fetchone()
    if not position:
        raise VoteRejected("Position not found", status_code=404)

    cur.execute("SELECT id FROM candidates WHERE position_id = %s ORDER BY id", (position_id,))
    position = dict(position)
    position['candidates'] = cur.fetchall()
    selection = normalize_selection(position, candidate_ids)

    cur.execute(
        """
        INSERT INTO votes (user_id, election_id, position_id, voted_at)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (user_id, election_id, position_id) DO NOTHING
        RETURNING id
        """,
        (user['id'], election_id, position_id, now)
    )
    row = cur.fetchone()
    if row is None:
        raise VoteRejected("You have already voted for this position")

    for candidate_id in selection:
        cur.execute(
            "INSERT INTO vote_selections (vote_id, candidate_id) VALUES (%s, %s)",
            (row['id'], candidate_id)
        )

    logger.info(
        f"Vote recorded: user={user['id']} election={election_id} "
        f"position={position_id} candidates={selection}"
    )
    return {
        "vote_id": row['id'],
        "election_id": election_id,
        "position_id": position_id,
        "candidate_ids": selection,
        "voted_at": now,
    }


def user_votes(cur, user_id: int, election_id: Optional[int] = None) -> Dict[str, Dict[str, List[int]]]:
    """The ``{electionId: {positionId: [candidateId, ...]}}`` map for one user."""
    query = """
        SELECT v.election_id, v.position_id, vs.candidate_id
        FROM votes v
        LEFT JOIN vote_selections vs ON vs.vote_id = v.id
        WHERE v.user_id = %s
    """
    params = [user_id]
    if election_id is not None:
        query += " AND v.election_id = %s"
        params.append(election_id)
    query += " ORDER BY v.id, vs.candidate_id"
    cur.execute(query, params)

    votes = {}
    for row in cur.fetchall():
        picked = votes.setdefault(str(row['election_id']), {}).setdefault(str(row['position_id']), [])
        if row['candidate_id'] is not None:
            picked.append(row['candidate_id'])
    return votes


# --- Results ---

def tally_position(position: dict) -> dict:
    """Ranks candidates by votes, highest first; ties keep creation order."""
    candidates = position.get('candidates', [])
    total_votes = sum(c['votes'] for c in candidates)

    ranked = sorted(candidates, key=lambda c: (-c['votes'], c['id']))
    results = [
        {
            "candidate_id": c['id'],
            "candidate_name": c['name'],
            "votes": c['votes'],
            "percentage": (c['votes'] / total_votes) * 100 if total_votes > 0 else 0.0,
        }
        for c in ranked
    ]

    top_votes = results[0]['votes'] if results else 0
    winners = [r['candidate_id'] for r in results if top_votes > 0 and r['votes'] == top_votes]

    return {
        "position_id": position['id'],
        "position_title": position['title'],
        "max_selections": position.get('max_selections', 1),
        "candidates": results,
        "total_votes": total_votes,
        "winners": winners,
    }


def compute_turnout(total_votes: int, eligible_voters: int, position_count: int) -> Optional[float]:
    """Share of possible ballots cast, capped at 100. None without positions."""
    if position_count == 0:
        return None
    if eligible_voters <= 0:
        return 0.0
    max_possible = eligible_voters * position_count
    return min((total_votes / max_possible) * 100, 100.0)


def build_results(election: dict, eligible_voters: int) -> dict:
    positions = [tally_position(p) for p in election.get('positions', [])]
    total_votes = sum(p['total_votes'] for p in positions)
    return {
        "election_id": election['id'],
        "title": election['title'],
        "status": election['status'],
        "is_open": election_is_open(election),
        "positions": positions,
        "total_votes": total_votes,
        "voter_count": election.get('voter_count', 0),
        "eligible_voters": eligible_voters,
        "voter_turnout": compute_turnout(total_votes, eligible_voters, len(positions)),
    }
