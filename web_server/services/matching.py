import asyncio
import logging
import math
import os
from typing import Optional

from models.matching import (
    ConfidenceLevel,
    MatchCandidate,
    MatchScore,
    MatchScoreBreakdown,
)
from models.student import (
    CommunicationPreference,
    MatchingPreferences,
    StudentProfile,
    TimeSlot,
    compute_pace,
    count_completed_videos,
    find_candidate_pool,
    get_preferences,
    get_student,
)
from models.connection import get_active_peer_ids

logger = logging.getLogger(__name__)

# findCandidates drops anything below this; rank_matches applies no floor.
MIN_MATCH_SCORE = 60

HIGH_CONFIDENCE = 80
MEDIUM_CONFIDENCE = 60


class StudentNotFoundError(LookupError):
    """The requesting student has no profile."""


class PreferencesNotFoundError(LookupError):
    """The requesting student has never saved matching preferences."""


# ── Helpers ──────────────────────────────────────────────────────────────

def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _time_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def count_shared_items(items_a: list[str], items_b: list[str]) -> int:
    """Case-insensitive size of the intersection of two string lists."""
    set_a = {s.strip().lower() for s in items_a}
    set_b = {s.strip().lower() for s in items_b}
    return len(set_a & set_b)


def calculate_schedule_overlap(slots_a: list[TimeSlot], slots_b: list[TimeSlot]) -> float:
    """Hours of overlap across every same-day pair of slots, to one decimal."""
    if not slots_a or not slots_b:
        return 0.0

    total_minutes = 0
    for slot_a in slots_a:
        for slot_b in slots_b:
            if slot_a.day.strip().lower() != slot_b.day.strip().lower():
                continue
            start = max(_time_to_minutes(slot_a.start_time), _time_to_minutes(slot_b.start_time))
            end = min(_time_to_minutes(slot_a.end_time), _time_to_minutes(slot_b.end_time))
            if end > start:
                total_minutes += end - start

    return _round_half_up(total_minutes / 60, 1)


def communication_styles_match(
    pref_a: Optional[CommunicationPreference],
    pref_b: Optional[CommunicationPreference],
) -> bool:
    if CommunicationPreference.any in (pref_a, pref_b):
        return True
    if pref_a is None or pref_b is None:
        return False
    return pref_a == pref_b


def generate_match_reasoning(
    student: StudentProfile,
    candidate: StudentProfile,
    breakdown: MatchScoreBreakdown,
) -> str:
    reasons: list[str] = []

    if breakdown.level_compatibility >= 20:
        reasons.append(f"Similar skill levels (Level {student.level} and {candidate.level})")
    if breakdown.schedule_overlap >= 15:
        reasons.append("Overlapping study times")
    if breakdown.goal_alignment >= 15:
        reasons.append("Shared learning goals")
    if breakdown.learning_pace_match >= 12:
        reasons.append("Similar learning pace")
    if breakdown.interests_overlap >= 8:
        reasons.append("Common interests")

    if not reasons:
        reasons.append("Compatible learning styles")

    return ". ".join(reasons) + "."


def _confidence(total_score: int) -> ConfidenceLevel:
    if total_score >= HIGH_CONFIDENCE:
        return ConfidenceLevel.high
    if total_score >= MEDIUM_CONFIDENCE:
        return ConfidenceLevel.medium
    return ConfidenceLevel.low


# ── Scoring ──────────────────────────────────────────────────────────────

def calculate_compatibility(
    student: StudentProfile,
    candidate: StudentProfile,
    student_prefs: MatchingPreferences,
    candidate_prefs: MatchingPreferences,
) -> MatchScore:
    """Deterministic 0-100 compatibility between two students.

    Six capped terms are summed: level (25), shared topics (20), schedule
    overlap (20), learning pace (15), project interests (10) and
    communication style (10, never below 5). Every term depends only on
    absolute differences or set intersections, so the score is symmetric.
    A missing ``videos_per_week`` counts as zero.
    """
    level_diff = abs(student.level - candidate.level)
    shared_topics = count_shared_items(student_prefs.interested_topics, candidate_prefs.interested_topics)
    overlap_hours = calculate_schedule_overlap(
        student_prefs.preferred_study_times, candidate_prefs.preferred_study_times
    )
    pace_diff = abs((student.videos_per_week or 0) - (candidate.videos_per_week or 0))
    shared_interests = count_shared_items(student_prefs.project_interests, candidate_prefs.project_interests)
    comm_match = communication_styles_match(
        student_prefs.communication_preference, candidate_prefs.communication_preference
    )

    breakdown = MatchScoreBreakdown(
        level_compatibility=max(0, 25 - level_diff * 8),
        goal_alignment=min(20, shared_topics * 7),
        schedule_overlap=min(20, _round_half_up(overlap_hours * 4, 1)),
        learning_pace_match=max(0, 15 - pace_diff * 2),
        interests_overlap=min(10, shared_interests * 4),
        communication_style_fit=10 if comm_match else 5,
    )

    total = sum(breakdown.model_dump().values())
    total_score = int(_round_half_up(total))

    return MatchScore(
        total_score=total_score,
        breakdown=breakdown,
        confidence_level=_confidence(total_score),
        reasoning=generate_match_reasoning(student, candidate, breakdown),
    )


# ── Ranking ──────────────────────────────────────────────────────────────

def _enrich_concurrency() -> int:
    return max(1, int(os.getenv("MATCH_ENRICH_CONCURRENCY", "8")))


async def with_pace(profiles: list[StudentProfile]) -> list[StudentProfile]:
    """Attach videos_per_week to each profile, fetching counts in parallel.

    Output order always matches input order.
    """
    semaphore = asyncio.Semaphore(_enrich_concurrency())

    async def enrich(profile: StudentProfile) -> StudentProfile:
        if profile.videos_per_week is not None:
            return profile
        async with semaphore:
            completed = await count_completed_videos(profile.id)
        return profile.model_copy(
            update={"videos_per_week": compute_pace(completed, profile.created_at)}
        )

    return list(await asyncio.gather(*(enrich(p) for p in profiles)))


def _sort_by_score(matches: list[MatchCandidate]) -> list[MatchCandidate]:
    # Stable: equal scores keep pool order
    return sorted(matches, key=lambda m: m.match_score.total_score, reverse=True)


async def find_candidates(
    student_id: str,
    preferences: MatchingPreferences,
    limit: int = 10,
) -> list[MatchCandidate]:
    """Top ``limit`` study buddies for a student, best first.

    Raises StudentNotFoundError when the student has no profile. Store
    errors while querying the pool propagate unchanged. Candidates without
    preferences, or already suggested/connected, are skipped. Only scores
    of MIN_MATCH_SCORE and above are returned.
    """
    student = await get_student(student_id)
    if student is None:
        raise StudentNotFoundError(student_id)

    (student,) = await with_pace([student])
    excluded = await get_active_peer_ids(student_id)
    pool = await find_candidate_pool(student, preferences.timezone)

    eligible = [
        (cand, prefs)
        for cand, prefs in pool
        if prefs is not None and cand.id not in excluded
    ]
    enriched = await with_pace([cand for cand, _ in eligible])

    matches: list[MatchCandidate] = []
    for cand, (_, cand_prefs) in zip(enriched, eligible):
        score = calculate_compatibility(student, cand, preferences, cand_prefs)
        if score.total_score >= MIN_MATCH_SCORE:
            matches.append(MatchCandidate(student=cand, preferences=cand_prefs, match_score=score))

    logger.debug(
        "find_candidates student=%s pool=%d eligible=%d above_floor=%d",
        student_id, len(pool), len(eligible), len(matches),
    )
    return _sort_by_score(matches)[:limit]


async def rank_matches(student_id: str, candidates: list[StudentProfile]) -> list[MatchCandidate]:
    """Score an externally supplied candidate list, best first.

    Unlike find_candidates there is no query filtering and no score floor:
    every candidate with saved preferences is returned.
    """
    student = await get_student(student_id)
    if student is None:
        raise StudentNotFoundError(student_id)
    student_prefs = await get_preferences(student_id)
    if student_prefs is None:
        raise PreferencesNotFoundError(student_id)

    (student,) = await with_pace([student])
    semaphore = asyncio.Semaphore(_enrich_concurrency())

    async def load_prefs(candidate: StudentProfile) -> Optional[MatchingPreferences]:
        async with semaphore:
            return await get_preferences(candidate.id)

    candidate_prefs = await asyncio.gather(*(load_prefs(c) for c in candidates))

    eligible = [
        (cand, prefs)
        for cand, prefs in zip(candidates, candidate_prefs)
        if prefs is not None
    ]
    enriched = await with_pace([cand for cand, _ in eligible])

    ranked = [
        MatchCandidate(
            student=cand,
            preferences=prefs,
            match_score=calculate_compatibility(student, cand, student_prefs, prefs),
        )
        for cand, (_, prefs) in zip(enriched, eligible)
    ]
    return _sort_by_score(ranked)
