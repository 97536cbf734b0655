from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

from db import get_db


class ConnectionExistsError(Exception):
    """A match record already exists for this pair of students."""


class InvalidTransitionError(Exception):
    """The match is already connected or declined."""


# ── Helpers ─────────────────────────────────────────────────────────────


def make_match_id(student_a: str, student_b: str) -> str:
    """Deterministic match ID from two student ids, sorted alphabetically."""
    a, b = sorted([student_a, student_b])
    return f"{a}_{b}"


def _involving(student_id: str) -> dict:
    return {"$or": [{"student_a_id": student_id}, {"student_b_id": student_id}]}


# ── Request / response schemas ──────────────────────────────────────────


class MatchStatus(str, Enum):
    suggested = "suggested"
    connected = "connected"
    declined = "declined"


ACTIVE_STATUSES = [MatchStatus.suggested.value, MatchStatus.connected.value]


class StudyBuddyMatch(BaseModel):
    """Match document as stored in MongoDB."""
    match_id: str
    student_a_id: str
    student_b_id: str
    compatibility_score: int = Field(ge=0, le=100)
    match_reasoning: Optional[str] = None
    status: MatchStatus = MatchStatus.suggested
    created_at: datetime
    connected_at: Optional[datetime] = None

    def peer_of(self, student_id: str) -> str:
        return self.student_b_id if student_id == self.student_a_id else self.student_a_id


class ConnectionCreate(BaseModel):
    """Body of POST /connections."""
    from_student_id: str
    to_student_id: str
    compatibility_score: int = Field(ge=0, le=100)
    match_reasoning: Optional[str] = None


class ConnectionAction(BaseModel):
    """Body of POST /connections/{match_id}/accept and /decline."""
    student_id: str


class ConnectionList(BaseModel):
    connections: list[StudyBuddyMatch]


# ── CRUD ────────────────────────────────────────────────────────────────


async def get_connection(match_id: str) -> Optional[StudyBuddyMatch]:
    """Fetch a single match by its ID."""
    db = get_db()
    doc = await db.study_buddy_matches.find_one({"match_id": match_id}, {"_id": 0})
    if doc is None:
        return None
    return StudyBuddyMatch(**doc)


async def get_active_peer_ids(student_id: str) -> set[str]:
    """Ids of everyone this student is already suggested to or connected with."""
    db = get_db()
    cursor = db.study_buddy_matches.find(
        {**_involving(student_id), "status": {"$in": ACTIVE_STATUSES}},
        {"_id": 0, "student_a_id": 1, "student_b_id": 1},
    )
    docs = await cursor.to_list(length=None)
    peers = {doc["student_a_id"] for doc in docs} | {doc["student_b_id"] for doc in docs}
    peers.discard(student_id)
    return peers


async def send_connection_request(data: ConnectionCreate) -> StudyBuddyMatch:
    """Record a suggested match. Race-safe through the unique match_id index."""
    if data.from_student_id == data.to_student_id:
        raise ValueError("A student cannot match with themselves")

    db = get_db()
    doc = {
        "match_id": make_match_id(data.from_student_id, data.to_student_id),
        "student_a_id": data.from_student_id,
        "student_b_id": data.to_student_id,
        "compatibility_score": data.compatibility_score,
        "match_reasoning": data.match_reasoning,
        "status": MatchStatus.suggested.value,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "connected_at": None,
    }
    try:
        await db.study_buddy_matches.insert_one(doc)
    except DuplicateKeyError:
        raise ConnectionExistsError(doc["match_id"])
    doc.pop("_id", None)
    return StudyBuddyMatch(**doc)


async def _transition(match_id: str, student_id: str, changes: dict) -> Optional[StudyBuddyMatch]:
    db = get_db()
    match = await get_connection(match_id)
    if match is None:
        return None
    if student_id not in (match.student_a_id, match.student_b_id):
        return None
    if match.status != MatchStatus.suggested:
        raise InvalidTransitionError(f"Match {match_id} is already {match.status.value}")

    # Only a still-suggested record may move, so concurrent calls cannot both win
    result = await db.study_buddy_matches.find_one_and_update(
        {"match_id": match_id, "status": MatchStatus.suggested.value},
        {"$set": changes},
        return_document=True,
    )
    if result is None:
        raise InvalidTransitionError(f"Match {match_id} changed concurrently")
    result.pop("_id", None)
    return StudyBuddyMatch(**result)


async def accept_connection(match_id: str, student_id: str) -> Optional[StudyBuddyMatch]:
    """Move a suggested match to connected. None if missing or not a participant."""
    now = datetime.now(timezone.utc).isoformat()
    return await _transition(
        match_id, student_id,
        {"status": MatchStatus.connected.value, "connected_at": now},
    )


async def decline_connection(match_id: str, student_id: str) -> Optional[StudyBuddyMatch]:
    """Move a suggested match to declined."""
    return await _transition(match_id, student_id, {"status": MatchStatus.declined.value})


async def get_buddies(student_id: str) -> list[StudyBuddyMatch]:
    """Connected matches for a student, most recently connected first."""
    db = get_db()
    cursor = db.study_buddy_matches.find(
        {**_involving(student_id), "status": MatchStatus.connected.value},
        {"_id": 0},
    ).sort("connected_at", -1)
    docs = await cursor.to_list(length=200)
    return [StudyBuddyMatch(**doc) for doc in docs]


async def get_pending_requests(student_id: str) -> list[StudyBuddyMatch]:
    """Suggested matches awaiting a response, newest first."""
    db = get_db()
    cursor = db.study_buddy_matches.find(
        {**_involving(student_id), "status": MatchStatus.suggested.value},
        {"_id": 0},
    ).sort("created_at", -1)
    docs = await cursor.to_list(length=200)
    return [StudyBuddyMatch(**doc) for doc in docs]
