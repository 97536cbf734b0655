import logging
from typing import Optional

from models.group import StudyGroup, discover_groups, set_activity_score
from models.student import MatchingPreferences, StudentProfile, get_preferences, get_student
from services.matching import StudentNotFoundError

logger = logging.getLogger(__name__)

# Groups must score strictly above this to be recommended
MIN_GROUP_SCORE = 20

MODULE_MATCH_POINTS = 30
LEVEL_IN_RANGE_POINTS = 25
OPEN_LEVEL_POINTS = 10
TOPIC_POINTS = 10
ACTIVITY_WEIGHT = 0.15


def score_group(
    student: StudentProfile,
    prefs: Optional[MatchingPreferences],
    group: StudyGroup,
) -> float:
    """How well an open group suits a student.

    Focus module within one of the student's current module: +30.
    A group with both level bounds gives +25 when the student is inside
    them and nothing otherwise; a group without both bounds gives +10.
    Each of the student's topics listed in required_topics: +10 (exact
    match). Plus 15% of the group's activity score.
    """
    score = 0.0

    if group.focus_module is not None and abs(group.focus_module - student.current_module) <= 1:
        score += MODULE_MATCH_POINTS

    if group.min_level is not None and group.max_level is not None:
        if group.min_level <= student.level <= group.max_level:
            score += LEVEL_IN_RANGE_POINTS
    else:
        score += OPEN_LEVEL_POINTS

    if prefs is not None and group.required_topics:
        required = set(group.required_topics)
        score += TOPIC_POINTS * sum(1 for topic in prefs.interested_topics if topic in required)

    score += group.activity_score * ACTIVITY_WEIGHT
    return score


async def recommend_groups(student_id: str, limit: int = 5) -> list[StudyGroup]:
    """Best-fitting open groups for a student, highest score first.

    Raises StudentNotFoundError. Students without saved preferences are
    still scored, just without topic points.
    """
    student = await get_student(student_id)
    if student is None:
        raise StudentNotFoundError(student_id)
    prefs = await get_preferences(student_id)

    groups = await discover_groups()
    scored = [(score_group(student, prefs, g), g) for g in groups]
    # Stable: ties keep the activity order discovery returned
    ranked = sorted(
        (pair for pair in scored if pair[0] > MIN_GROUP_SCORE),
        key=lambda pair: pair[0],
        reverse=True,
    )

    logger.debug(
        "recommend_groups student=%s open=%d above_floor=%d",
        student_id, len(groups), len(ranked),
    )
    return [g for _, g in ranked[:limit]]


def compute_activity_score(messages_last_week: int, check_ins_last_week: int) -> int:
    """0-100: two points per message and ten per check-in, each half capped at 50."""
    message_score = min(50, messages_last_week * 2)
    check_in_score = min(50, check_ins_last_week * 10)
    return message_score + check_in_score


async def refresh_activity_score(
    group_id: str, messages_last_week: int, check_ins_last_week: int
) -> Optional[StudyGroup]:
    """Recompute and store a group's activity score. None if the group is gone."""
    score = compute_activity_score(messages_last_week, check_ins_last_week)
    return await set_activity_score(group_id, score)
