import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

load_dotenv()

from db import connect_db, close_db
from models.student import (
    MatchingPreferences,
    MatchingPreferencesUpdate,
    get_preferences,
    get_student,
    get_students,
    upsert_preferences,
)
from models.matching import AICompatibility, MatchResponse, RankRequest
from models.connection import (
    ConnectionAction,
    ConnectionCreate,
    ConnectionExistsError,
    ConnectionList,
    InvalidTransitionError,
    StudyBuddyMatch,
    accept_connection,
    decline_connection,
    get_buddies,
    get_pending_requests,
    send_connection_request,
)
from models.group import (
    AlreadyMemberError,
    GroupAction,
    GroupActivity,
    GroupClosedError,
    GroupCreate,
    GroupDetails,
    GroupFullError,
    GroupList,
    GroupMember,
    GroupNotFoundError,
    GroupType,
    GroupUpdate,
    LevelRequirementError,
    MemberList,
    NotGroupCreatorError,
    StudyGroup,
    create_group,
    delete_group,
    discover_groups,
    get_group_details,
    get_group_members,
    get_my_groups,
    join_group,
    leave_group,
    update_group,
)
from services.matching import (
    PreferencesNotFoundError,
    StudentNotFoundError,
    find_candidates,
    rank_matches,
    with_pace,
)
from services.ai_compatibility import AICompatibilityAnalyzer
from services.groups import recommend_groups, refresh_activity_score

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await connect_db()
    app.state.ai_analyzer = AICompatibilityAnalyzer.from_env()
    yield
    await app.state.ai_analyzer.aclose()
    await close_db()


app = FastAPI(title="Study Buddy Matching API", lifespan=lifespan)


def get_ai_analyzer(request: Request) -> AICompatibilityAnalyzer:
    return request.app.state.ai_analyzer


# ── Preference endpoints ───────────────────────────────────────────────


@app.get("/students/{student_id}/preferences", response_model=MatchingPreferences)
async def read_preferences(student_id: str):
    prefs = await get_preferences(student_id)
    if prefs is None:
        raise HTTPException(status_code=404, detail="Matching preferences not set")
    return prefs


@app.put("/students/{student_id}/preferences", response_model=MatchingPreferences)
async def edit_preferences(student_id: str, body: MatchingPreferencesUpdate):
    if await get_student(student_id) is None:
        raise HTTPException(status_code=404, detail="Student not found")
    return await upsert_preferences(student_id, body)


# ── Matching endpoints ─────────────────────────────────────────────────


@app.get("/students/{student_id}/matches", response_model=MatchResponse)
async def match_student(student_id: str, limit: int = Query(10, ge=1, le=50)):
    try:
        prefs = await get_preferences(student_id)
        if prefs is None:
            if await get_student(student_id) is None:
                raise HTTPException(status_code=404, detail="Student not found")
            return JSONResponse(
                status_code=400,
                content={
                    "detail": "Please set up your matching preferences first",
                    "requires_setup": True,
                },
            )
        matches = await find_candidates(student_id, prefs, limit)
    except StudentNotFoundError:
        raise HTTPException(status_code=404, detail="Student not found")
    except PyMongoError:
        logger.exception("Candidate search failed for %s", student_id)
        raise HTTPException(status_code=503, detail="Unable to find matches right now")

    return MatchResponse(student_id=student_id, count=len(matches), matches=matches)


@app.post("/students/{student_id}/matches/rank", response_model=MatchResponse)
async def rank_student_matches(student_id: str, body: RankRequest):
    try:
        candidates = await get_students(body.candidate_ids)
        ranked = await rank_matches(student_id, candidates)
    except StudentNotFoundError:
        raise HTTPException(status_code=404, detail="Student not found")
    except PreferencesNotFoundError:
        raise HTTPException(status_code=400, detail="Please set up your matching preferences first")
    except PyMongoError:
        logger.exception("Ranking failed for %s", student_id)
        raise HTTPException(status_code=503, detail="Unable to rank matches right now")

    return MatchResponse(student_id=student_id, count=len(ranked), matches=ranked)


@app.post(
    "/students/{student_id}/matches/{candidate_id}/ai-analysis",
    response_model=AICompatibility,
)
async def ai_analysis(
    student_id: str,
    candidate_id: str,
    analyzer: AICompatibilityAnalyzer = Depends(get_ai_analyzer),
):
    student = await get_student(student_id)
    candidate = await get_student(candidate_id)
    if student is None or candidate is None:
        missing = student_id if student is None else candidate_id
        raise HTTPException(status_code=404, detail=f"Student {missing} not found")

    student_prefs = await get_preferences(student_id)
    candidate_prefs = await get_preferences(candidate_id)
    if student_prefs is None or candidate_prefs is None:
        raise HTTPException(status_code=400, detail="Both students need matching preferences")

    student, candidate = await with_pace([student, candidate])
    return await analyzer.analyze(student, candidate, student_prefs, candidate_prefs)


# ── Connection endpoints ───────────────────────────────────────────────


@app.post("/connections", response_model=StudyBuddyMatch, status_code=201)
async def create_connection(body: ConnectionCreate):
    for sid in (body.from_student_id, body.to_student_id):
        if await get_student(sid) is None:
            raise HTTPException(status_code=404, detail=f"Student {sid} not found")
    try:
        return await send_connection_request(body)
    except ConnectionExistsError:
        raise HTTPException(status_code=409, detail="Connection already exists")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/connections/{match_id}/accept", response_model=StudyBuddyMatch)
async def accept_connection_endpoint(match_id: str, body: ConnectionAction):
    try:
        conn = await accept_connection(match_id, body.student_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if conn is None:
        raise HTTPException(status_code=404, detail="Match not found or student mismatch")
    return conn


@app.post("/connections/{match_id}/decline", response_model=StudyBuddyMatch)
async def decline_connection_endpoint(match_id: str, body: ConnectionAction):
    try:
        conn = await decline_connection(match_id, body.student_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if conn is None:
        raise HTTPException(status_code=404, detail="Match not found or student mismatch")
    return conn


@app.get("/connections/user/{student_id}", response_model=ConnectionList)
async def list_buddies(student_id: str):
    return ConnectionList(connections=await get_buddies(student_id))


@app.get("/connections/user/{student_id}/pending", response_model=ConnectionList)
async def list_pending(student_id: str):
    return ConnectionList(connections=await get_pending_requests(student_id))


# ── Study group endpoints ──────────────────────────────────────────────


@app.post("/groups", response_model=StudyGroup, status_code=201)
async def create_group_endpoint(body: GroupCreate):
    if await get_student(body.creator_id) is None:
        raise HTTPException(status_code=404, detail=f"Student {body.creator_id} not found")
    return await create_group(body)


@app.get("/groups", response_model=GroupList)
async def discover_groups_endpoint(
    type: Optional[GroupType] = None,
    focus_module: Optional[int] = None,
    search: Optional[str] = Query(None, max_length=100),
):
    return GroupList(groups=await discover_groups(type, focus_module, search))


@app.get("/groups/user/{student_id}", response_model=GroupList)
async def list_my_groups(student_id: str):
    return GroupList(groups=await get_my_groups(student_id))


@app.get("/groups/recommendations/{student_id}", response_model=GroupList)
async def recommend_groups_endpoint(student_id: str, limit: int = Query(5, ge=1, le=20)):
    try:
        groups = await recommend_groups(student_id, limit)
    except StudentNotFoundError:
        raise HTTPException(status_code=404, detail="Student not found")
    return GroupList(groups=groups)


@app.get("/groups/{group_id}", response_model=GroupDetails)
async def read_group(group_id: str):
    details = await get_group_details(group_id)
    if details is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return details


@app.get("/groups/{group_id}/members", response_model=MemberList)
async def list_group_members(group_id: str):
    return MemberList(members=await get_group_members(group_id))


@app.post("/groups/{group_id}/join", response_model=GroupMember)
async def join_group_endpoint(group_id: str, body: GroupAction):
    student = await get_student(body.student_id)
    if student is None:
        raise HTTPException(status_code=404, detail=f"Student {body.student_id} not found")
    try:
        return await join_group(group_id, student)
    except GroupNotFoundError:
        raise HTTPException(status_code=404, detail="Group not found")
    except (GroupClosedError, GroupFullError, AlreadyMemberError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LevelRequirementError as e:
        raise HTTPException(status_code=403, detail=str(e))


@app.post("/groups/{group_id}/leave", response_model=GroupMember)
async def leave_group_endpoint(group_id: str, body: GroupAction):
    member = await leave_group(group_id, body.student_id)
    if member is None:
        raise HTTPException(status_code=404, detail="Not an active member of this group")
    return member


@app.patch("/groups/{group_id}", response_model=StudyGroup)
async def update_group_endpoint(group_id: str, body: GroupUpdate, student_id: str = Query(...)):
    try:
        group = await update_group(group_id, student_id, body)
    except NotGroupCreatorError:
        raise HTTPException(status_code=403, detail="Only the creator can edit this group")
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


@app.delete("/groups/{group_id}", response_model=StudyGroup)
async def delete_group_endpoint(group_id: str, student_id: str = Query(...)):
    try:
        group = await delete_group(group_id, student_id)
    except NotGroupCreatorError:
        raise HTTPException(status_code=403, detail="Only the creator can close this group")
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


@app.post("/groups/{group_id}/activity", response_model=StudyGroup)
async def refresh_group_activity(group_id: str, body: GroupActivity):
    group = await refresh_activity_score(group_id, body.messages_last_week, body.check_ins_last_week)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group
