import math
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from db import get_db


# ── Enums ────────────────────────────────────────────────────────────────

class AgeGroup(str, Enum):
    under_18 = "under-18"
    age_18_21 = "18-21"
    age_22_plus = "22+"


class LearningStyle(str, Enum):
    visual = "visual"
    hands_on = "hands-on"
    theoretical = "theoretical"
    social = "social"


class CommunicationPreference(str, Enum):
    text = "text"
    voice = "voice"
    video = "video"
    any = "any"


# The only age bucket allowed to match across groups.
OPEN_AGE_GROUP = AgeGroup.age_22_plus.value

LEVEL_WINDOW = 3
CANDIDATE_POOL_LIMIT = 50


# ── Nested models ────────────────────────────────────────────────────────

class TimeSlot(BaseModel):
    """A recurring weekly study window, e.g. Monday 18:00-21:00."""
    day: str
    start_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")
    end_time: str = Field(pattern=r"^\d{1,2}:\d{2}$")


# ── Request / response schemas ──────────────────────────────────────────

class StudentProfile(BaseModel):
    """Student document as stored in MongoDB.

    ``videos_per_week`` is never stored; the ranker fills it in per request
    from the student's completed-video count.
    """
    id: str
    name: str
    avatar_url: Optional[str] = None
    level: int = 1
    current_module: int = 1
    age_group: str = OPEN_AGE_GROUP
    user_id: Optional[str] = None
    created_at: datetime
    videos_per_week: Optional[int] = None


class MatchingPreferences(BaseModel):
    """One-to-one with a student. Missing list fields default to empty."""
    student_id: str
    weekly_availability_hours: float = 0
    timezone: Optional[str] = None
    preferred_study_times: list[TimeSlot] = []
    primary_goal: Optional[str] = None
    interested_topics: list[str] = []
    project_interests: list[str] = []
    learning_style: Optional[LearningStyle] = None
    communication_preference: Optional[CommunicationPreference] = None
    competitiveness: Optional[int] = Field(default=None, ge=1, le=5)
    open_to_matching: bool = True
    preferred_group_size: int = Field(default=4, ge=2, le=10)
    language_preferences: list[str] = ["en"]
    updated_at: Optional[datetime] = None


class MatchingPreferencesUpdate(BaseModel):
    """Body of PUT /students/{id}/preferences. All fields optional."""
    weekly_availability_hours: Optional[float] = None
    timezone: Optional[str] = None
    preferred_study_times: Optional[list[TimeSlot]] = None
    primary_goal: Optional[str] = None
    interested_topics: Optional[list[str]] = None
    project_interests: Optional[list[str]] = None
    learning_style: Optional[LearningStyle] = None
    communication_preference: Optional[CommunicationPreference] = None
    competitiveness: Optional[int] = Field(default=None, ge=1, le=5)
    open_to_matching: Optional[bool] = None
    preferred_group_size: Optional[int] = Field(default=None, ge=2, le=10)
    language_preferences: Optional[list[str]] = None


# ── Helpers ─────────────────────────────────────────────────────────────

def compute_pace(
    completed_videos: int,
    created_at: datetime,
    now: Optional[datetime] = None,
) -> int:
    """Completed videos per week since signup, rounded up."""
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    weeks_since_join = max(1, (now - created_at).days // 7)
    return math.ceil(completed_videos / weeks_since_join)


def build_candidate_pipeline(
    student: StudentProfile,
    timezone_pref: Optional[str] = None,
    limit: int = CANDIDATE_POOL_LIMIT,
) -> list[dict]:
    """Aggregation pipeline for the candidate pool around ``student``.

    Opted-out students never leave the database. Students who have not
    saved preferences at all come back with ``preferences`` set to None.
    """
    match: dict = {
        "id": {"$ne": student.id},
        "level": {
            "$gte": student.level - LEVEL_WINDOW,
            "$lte": student.level + LEVEL_WINDOW,
        },
    }
    # Minors (and 18-21) only ever see their own bucket
    if student.age_group != OPEN_AGE_GROUP:
        match["age_group"] = student.age_group

    pref_match: dict = {"preferences.open_to_matching": {"$ne": False}}
    if timezone_pref:
        pref_match["preferences.timezone"] = timezone_pref

    return [
        {"$match": match},
        {
            "$lookup": {
                "from": "matching_preferences",
                "localField": "id",
                "foreignField": "student_id",
                "as": "preferences",
            }
        },
        {"$addFields": {"preferences": {"$first": "$preferences"}}},
        {"$match": pref_match},
        {"$limit": limit},
        {"$project": {"_id": 0, "preferences._id": 0}},
    ]


# ── CRUD ─────────────────────────────────────────────────────────────────

async def get_student(student_id: str) -> Optional[StudentProfile]:
    """Fetch a single student by id. Returns None if not found."""
    db = get_db()
    doc = await db.students.find_one({"id": student_id}, {"_id": 0})
    if doc is None:
        return None
    return StudentProfile(**doc)


async def get_preferences(student_id: str) -> Optional[MatchingPreferences]:
    """Fetch a student's matching preferences. Returns None if never set."""
    db = get_db()
    doc = await db.matching_preferences.find_one({"student_id": student_id}, {"_id": 0})
    if doc is None:
        return None
    return MatchingPreferences(**doc)


async def upsert_preferences(
    student_id: str, data: MatchingPreferencesUpdate
) -> MatchingPreferences:
    """Create or partially update a student's matching preferences."""
    db = get_db()

    changes = data.model_dump(mode="json", exclude_none=True)
    changes["updated_at"] = datetime.now(timezone.utc).isoformat()

    # Defaults only land on first insert, never over a stored value
    defaults = MatchingPreferences(student_id=student_id).model_dump(mode="json", exclude_none=True)
    on_insert = {k: v for k, v in defaults.items() if k not in changes and k != "student_id"}

    update: dict = {"$set": changes}
    if on_insert:
        update["$setOnInsert"] = on_insert

    result = await db.matching_preferences.find_one_and_update(
        {"student_id": student_id},
        update,
        upsert=True,
        return_document=True,
        projection={"_id": 0},
    )
    return MatchingPreferences(**result)


async def count_completed_videos(student_id: str) -> int:
    """Number of videos this student has finished."""
    db = get_db()
    return await db.learning_progress.count_documents(
        {"student_id": student_id, "completed": True}
    )


async def find_candidate_pool(
    student: StudentProfile,
    timezone_pref: Optional[str] = None,
    limit: int = CANDIDATE_POOL_LIMIT,
) -> list[tuple[StudentProfile, Optional[MatchingPreferences]]]:
    """Run the candidate pipeline. Query errors propagate to the caller."""
    db = get_db()
    cursor = db.students.aggregate(build_candidate_pipeline(student, timezone_pref, limit))
    docs = await cursor.to_list(length=None)

    pool: list[tuple[StudentProfile, Optional[MatchingPreferences]]] = []
    for doc in docs:
        prefs_doc = doc.pop("preferences", None)
        prefs = MatchingPreferences(**prefs_doc) if prefs_doc else None
        pool.append((StudentProfile(**doc), prefs))
    return pool


async def get_students(student_ids: list[str]) -> list[StudentProfile]:
    """Fetch several students, in the order the ids were given. Unknown ids are dropped."""
    db = get_db()
    cursor = db.students.find({"id": {"$in": student_ids}}, {"_id": 0})
    docs = await cursor.to_list(length=None)
    by_id = {doc["id"]: StudentProfile(**doc) for doc in docs}
    return [by_id[sid] for sid in student_ids if sid in by_id]
