import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from db import get_db
from models.student import StudentProfile

DISCOVERY_LIMIT = 50


class GroupNotFoundError(LookupError):
    """No study group with this id."""


class GroupClosedError(Exception):
    """The group is not recruiting."""


class GroupFullError(Exception):
    """The group already has max_members active members."""


class AlreadyMemberError(Exception):
    """The student is already an active member of the group."""


class LevelRequirementError(Exception):
    """The student's level is outside the group's level range."""


class NotGroupCreatorError(Exception):
    """Only the group's creator may change or close it."""


# ── Request / response schemas ──────────────────────────────────────────


class GroupType(str, Enum):
    learning_circle = "learning-circle"
    project_team = "project-team"
    accountability_pod = "accountability-pod"
    workshop = "workshop"


class RecruitingStatus(str, Enum):
    open = "open"
    invite_only = "invite-only"
    closed = "closed"


class MemberRole(str, Enum):
    creator = "creator"
    admin = "admin"
    member = "member"


class MemberStatus(str, Enum):
    active = "active"
    left = "left"
    removed = "removed"


class GroupCreate(BaseModel):
    """Body of POST /groups."""
    creator_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    type: GroupType
    focus_module: Optional[int] = None
    focus_project: Optional[str] = None
    focus_topic: Optional[str] = None
    max_members: int = Field(default=5, ge=2, le=10)
    recruiting_status: RecruitingStatus = RecruitingStatus.open
    min_level: Optional[int] = Field(default=None, ge=1)
    max_level: Optional[int] = Field(default=None, ge=1)
    required_topics: list[str] = []
    timezone: Optional[str] = None
    meeting_schedule: Optional[str] = None
    requirements: Optional[str] = None
    is_public: bool = True
    min_weekly_check_ins: int = Field(default=0, ge=0)
    min_weekly_messages: int = Field(default=0, ge=0)


class GroupUpdate(BaseModel):
    """Body of PATCH /groups/{group_id}. All fields optional."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    focus_module: Optional[int] = None
    focus_project: Optional[str] = None
    focus_topic: Optional[str] = None
    max_members: Optional[int] = Field(default=None, ge=2, le=10)
    recruiting_status: Optional[RecruitingStatus] = None
    min_level: Optional[int] = Field(default=None, ge=1)
    max_level: Optional[int] = Field(default=None, ge=1)
    required_topics: Optional[list[str]] = None
    timezone: Optional[str] = None
    meeting_schedule: Optional[str] = None
    requirements: Optional[str] = None
    is_public: Optional[bool] = None


class StudyGroup(BaseModel):
    """Group document as stored in MongoDB."""
    id: str
    name: str
    description: str = ""
    type: GroupType
    focus_module: Optional[int] = None
    focus_project: Optional[str] = None
    focus_topic: Optional[str] = None
    max_members: int = Field(default=5, ge=2, le=10)
    recruiting_status: RecruitingStatus = RecruitingStatus.open
    min_level: Optional[int] = None
    max_level: Optional[int] = None
    required_topics: list[str] = []
    timezone: Optional[str] = None
    meeting_schedule: Optional[str] = None
    requirements: Optional[str] = None
    is_public: bool = True
    min_weekly_check_ins: int = 0
    min_weekly_messages: int = 0
    activity_score: int = Field(default=100, ge=0, le=100)
    created_by: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class GroupDetails(StudyGroup):
    member_count: int


class GroupMember(BaseModel):
    """Membership document. One per (group, student); rejoining reuses it."""
    group_id: str
    student_id: str
    role: MemberRole = MemberRole.member
    status: MemberStatus = MemberStatus.active
    joined_at: datetime
    left_at: Optional[datetime] = None
    total_messages: int = 0
    total_check_ins: int = 0


class GroupAction(BaseModel):
    """Body of POST /groups/{group_id}/join and /leave."""
    student_id: str


class GroupActivity(BaseModel):
    """Body of POST /groups/{group_id}/activity."""
    messages_last_week: int = Field(ge=0)
    check_ins_last_week: int = Field(ge=0)


class GroupList(BaseModel):
    groups: list[StudyGroup]


class MemberList(BaseModel):
    members: list[GroupMember]


# ── CRUD ────────────────────────────────────────────────────────────────


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def get_group(group_id: str) -> Optional[StudyGroup]:
    db = get_db()
    doc = await db.study_groups.find_one({"id": group_id}, {"_id": 0})
    if doc is None:
        return None
    return StudyGroup(**doc)


async def count_active_members(group_id: str) -> int:
    db = get_db()
    return await db.study_group_members.count_documents(
        {"group_id": group_id, "status": MemberStatus.active.value}
    )


async def create_group(data: GroupCreate) -> StudyGroup:
    """Insert a group and enrol its creator as the first active member."""
    db = get_db()
    now = _now()

    doc = data.model_dump(mode="json", exclude={"creator_id"})
    doc.update({
        "id": str(uuid4()),
        "activity_score": 100,
        "created_by": data.creator_id,
        "created_at": now,
        "updated_at": now,
    })
    await db.study_groups.insert_one(doc)
    doc.pop("_id", None)

    member = {
        "group_id": doc["id"],
        "student_id": data.creator_id,
        "role": MemberRole.creator.value,
        "status": MemberStatus.active.value,
        "joined_at": now,
        "left_at": None,
        "total_messages": 0,
        "total_check_ins": 0,
    }
    await db.study_group_members.insert_one(member)
    return StudyGroup(**doc)


async def join_group(group_id: str, student: StudentProfile) -> GroupMember:
    """Add ``student`` as an active member.

    Raises GroupNotFoundError, GroupClosedError, AlreadyMemberError,
    GroupFullError or LevelRequirementError. A student who left earlier
    gets their old membership back with a fresh joined_at.
    """
    db = get_db()
    group = await get_group(group_id)
    if group is None:
        raise GroupNotFoundError(group_id)
    if group.recruiting_status == RecruitingStatus.closed:
        raise GroupClosedError("Group is not recruiting")

    existing = await db.study_group_members.find_one(
        {"group_id": group_id, "student_id": student.id}, {"_id": 0}
    )
    if existing and existing["status"] == MemberStatus.active.value:
        raise AlreadyMemberError(f"{student.id} is already in {group_id}")

    if await count_active_members(group_id) >= group.max_members:
        raise GroupFullError("Group is full")
    if group.min_level is not None and student.level < group.min_level:
        raise LevelRequirementError(f"Minimum level {group.min_level} required")
    if group.max_level is not None and student.level > group.max_level:
        raise LevelRequirementError(f"Maximum level {group.max_level} exceeded")

    result = await db.study_group_members.find_one_and_update(
        {"group_id": group_id, "student_id": student.id},
        {
            "$set": {
                "role": MemberRole.member.value,
                "status": MemberStatus.active.value,
                "joined_at": _now(),
                "left_at": None,
            },
            "$setOnInsert": {"total_messages": 0, "total_check_ins": 0},
        },
        upsert=True,
        return_document=True,
        projection={"_id": 0},
    )
    return GroupMember(**result)


async def leave_group(group_id: str, student_id: str) -> Optional[GroupMember]:
    """Mark an active membership as left. None if the student is not an active member."""
    db = get_db()
    result = await db.study_group_members.find_one_and_update(
        {"group_id": group_id, "student_id": student_id, "status": MemberStatus.active.value},
        {"$set": {"status": MemberStatus.left.value, "left_at": _now()}},
        return_document=True,
        projection={"_id": 0},
    )
    if result is None:
        return None
    return GroupMember(**result)


async def get_group_details(group_id: str) -> Optional[GroupDetails]:
    group = await get_group(group_id)
    if group is None:
        return None
    return GroupDetails(**group.model_dump(), member_count=await count_active_members(group_id))


async def get_group_members(group_id: str) -> list[GroupMember]:
    """Active members, earliest joiner first."""
    db = get_db()
    cursor = db.study_group_members.find(
        {"group_id": group_id, "status": MemberStatus.active.value}, {"_id": 0}
    ).sort("joined_at", 1)
    docs = await cursor.to_list(length=200)
    return [GroupMember(**doc) for doc in docs]


async def get_my_groups(student_id: str) -> list[StudyGroup]:
    """Groups the student is actively in, most recently joined first."""
    db = get_db()
    cursor = db.study_group_members.find(
        {"student_id": student_id, "status": MemberStatus.active.value},
        {"_id": 0, "group_id": 1, "joined_at": 1},
    ).sort("joined_at", -1)
    memberships = await cursor.to_list(length=200)
    group_ids = [m["group_id"] for m in memberships]

    cursor = db.study_groups.find({"id": {"$in": group_ids}}, {"_id": 0})
    docs = await cursor.to_list(length=None)
    by_id = {doc["id"]: StudyGroup(**doc) for doc in docs}
    return [by_id[gid] for gid in group_ids if gid in by_id]


async def discover_groups(
    group_type: Optional[GroupType] = None,
    focus_module: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = DISCOVERY_LIMIT,
) -> list[StudyGroup]:
    """Open, public groups, most active first.

    ``search`` is a case-insensitive substring match on name or description.
    """
    db = get_db()
    query: dict = {"recruiting_status": RecruitingStatus.open.value, "is_public": True}
    if group_type is not None:
        query["type"] = GroupType(group_type).value
    if focus_module is not None:
        query["focus_module"] = focus_module
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]

    cursor = db.study_groups.find(query, {"_id": 0}).sort("activity_score", -1)
    docs = await cursor.to_list(length=limit)
    return [StudyGroup(**doc) for doc in docs]


async def _creator_update(group_id: str, student_id: str, changes: dict) -> Optional[StudyGroup]:
    db = get_db()
    group = await get_group(group_id)
    if group is None:
        return None
    if group.created_by != student_id:
        raise NotGroupCreatorError(f"{student_id} did not create {group_id}")

    changes["updated_at"] = _now()
    result = await db.study_groups.find_one_and_update(
        {"id": group_id},
        {"$set": changes},
        return_document=True,
        projection={"_id": 0},
    )
    if result is None:
        return None
    return StudyGroup(**result)


async def update_group(group_id: str, student_id: str, data: GroupUpdate) -> Optional[StudyGroup]:
    """Apply a partial update. Creator only; None if the group does not exist."""
    return await _creator_update(group_id, student_id, data.model_dump(mode="json", exclude_none=True))


async def delete_group(group_id: str, student_id: str) -> Optional[StudyGroup]:
    """Soft delete: the group stops recruiting and drops out of discovery."""
    return await _creator_update(
        group_id, student_id,
        {"recruiting_status": RecruitingStatus.closed.value, "is_public": False},
    )


async def set_activity_score(group_id: str, score: int) -> Optional[StudyGroup]:
    db = get_db()
    result = await db.study_groups.find_one_and_update(
        {"id": group_id},
        {"$set": {"activity_score": score, "updated_at": _now()}},
        return_document=True,
        projection={"_id": 0},
    )
    if result is None:
        return None
    return StudyGroup(**result)
