"""Tests for compatibility scoring and candidate ranking.

Store access is monkeypatched at the services.matching seam, so no MongoDB
is needed.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pymongo.errors import ServerSelectionTimeoutError

import services.matching as matching
from models.matching import ConfidenceLevel
from models.student import build_candidate_pipeline, compute_pace
from services.matching import (
    MIN_MATCH_SCORE,
    PreferencesNotFoundError,
    StudentNotFoundError,
    calculate_compatibility,
    calculate_schedule_overlap,
    communication_styles_match,
    count_shared_items,
    find_candidates,
    rank_matches,
)

EVENING = [("Monday", "18:00", "21:00")]
TOPICS = ["python", "react", "sql"]


# ── Scoring ──────────────────────────────────────────────────────────────


def test_near_identical_students_score_high(make_student, make_prefs):
    alice = make_student("alice", level=5, videos_per_week=3)
    bob = make_student("bob", level=5, videos_per_week=3)
    a_prefs = make_prefs("alice", topics=TOPICS, interests=["web", "ai"], slots=EVENING)
    b_prefs = make_prefs("bob", topics=["Python", "React", "SQL"], interests=["AI", "web"], slots=EVENING)

    score = calculate_compatibility(alice, bob, a_prefs, b_prefs)

    assert score.breakdown.level_compatibility == 25
    assert score.breakdown.goal_alignment == 20
    assert score.breakdown.schedule_overlap == 12  # 3 hours * 4
    assert score.breakdown.learning_pace_match == 15
    assert score.breakdown.interests_overlap == 8
    assert score.breakdown.communication_style_fit == 10
    assert score.total_score == 90
    assert score.confidence_level == ConfidenceLevel.high
    assert score.reasoning == (
        "Similar skill levels (Level 5 and 5). Shared learning goals. "
        "Similar learning pace. Common interests."
    )


def test_large_level_gap_zeroes_level_term(make_student, make_prefs):
    alice = make_student("alice", level=5, videos_per_week=3)
    bob = make_student("bob", level=9, videos_per_week=5)
    a_prefs = make_prefs("alice", topics=TOPICS, interests=["web"], slots=EVENING)
    b_prefs = make_prefs("bob", topics=["python"], interests=["web"], slots=EVENING, communication="any")

    score = calculate_compatibility(alice, bob, a_prefs, b_prefs)

    assert score.breakdown.level_compatibility == 0
    assert score.breakdown.learning_pace_match == 11
    # 0 + 7 + 12 + 11 + 4 + 10
    assert score.total_score == 44
    assert score.total_score < MIN_MATCH_SCORE
    assert score.confidence_level == ConfidenceLevel.low


def test_no_schedule_overlap_is_not_disqualifying(make_student, make_prefs):
    alice = make_student("alice", level=5, videos_per_week=3)
    bob = make_student("bob", level=5, videos_per_week=3)
    a_prefs = make_prefs("alice", topics=TOPICS, interests=["web", "ai"], slots=EVENING)
    b_prefs = make_prefs("bob", topics=TOPICS, interests=["web", "ai"], slots=[("Friday", "09:00", "12:00")])

    score = calculate_compatibility(alice, bob, a_prefs, b_prefs)

    assert score.breakdown.schedule_overlap == 0
    assert score.total_score == 78
    assert score.confidence_level == ConfidenceLevel.medium


@pytest.mark.parametrize("level_b,expected", [(5, 25), (6, 17), (7, 9), (8, 1), (2, 1), (10, 0)])
def test_level_compatibility_steps(make_student, make_prefs, level_b, expected):
    score = calculate_compatibility(
        make_student("a", level=5), make_student("b", level=level_b),
        make_prefs("a"), make_prefs("b"),
    )
    assert score.breakdown.level_compatibility == expected


def test_pace_penalty_floors_at_zero(make_student, make_prefs):
    slow = make_student("a", videos_per_week=3)
    fast = make_student("b", videos_per_week=11)
    score = calculate_compatibility(slow, fast, make_prefs("a"), make_prefs("b"))
    assert score.breakdown.learning_pace_match == 0


def test_missing_pace_counts_as_zero(make_student, make_prefs):
    unknown = make_student("a", videos_per_week=None)
    busy = make_student("b", videos_per_week=2)
    score = calculate_compatibility(unknown, busy, make_prefs("a"), make_prefs("b"))
    assert score.breakdown.learning_pace_match == 11


def test_empty_preferences_fall_back_to_generic_reasoning(make_student, make_prefs):
    a = make_student("a", level=1, videos_per_week=0)
    b = make_student("b", level=4, videos_per_week=9)
    score = calculate_compatibility(a, b, make_prefs("a", communication=None), make_prefs("b", communication=None))

    assert score.breakdown.communication_style_fit == 5
    # 1 + 0 + 0 + 0 + 0 + 5
    assert score.total_score == 6
    assert score.reasoning == "Compatible learning styles."


def test_shared_items_are_case_insensitive_sets():
    assert count_shared_items(["Python", "react"], ["python", "REACT ", "go"]) == 2
    assert count_shared_items(["python", "python"], ["PYTHON"]) == 1
    assert count_shared_items([], ["python"]) == 0


def test_schedule_overlap_only_compares_same_day(make_prefs):
    a = make_prefs("a", slots=[("Monday", "18:00", "21:00"), ("Wednesday", "09:00", "10:30")])
    b = make_prefs("b", slots=[
        ("Monday", "20:00", "22:00"),
        ("Wednesday", "10:00", "12:00"),
        ("Tuesday", "18:00", "21:00"),
    ])
    assert calculate_schedule_overlap(a.preferred_study_times, b.preferred_study_times) == 1.5
    assert calculate_schedule_overlap(a.preferred_study_times, []) == 0


def test_schedule_term_is_capped(make_student, make_prefs):
    long_day = [("Saturday", "08:00", "20:00")]
    score = calculate_compatibility(
        make_student("a"), make_student("b"),
        make_prefs("a", slots=long_day), make_prefs("b", slots=long_day),
    )
    assert score.breakdown.schedule_overlap == 20


@pytest.mark.parametrize("a,b,expected", [
    ("text", "text", True),
    ("text", "voice", False),
    ("any", "video", True),
    ("voice", "any", True),
    (None, "text", False),
    (None, None, False),
])
def test_communication_styles_match(a, b, expected):
    assert communication_styles_match(a, b) is expected


def test_score_is_symmetric_and_bounded(make_student, make_prefs):
    students = [
        (make_student("a", level=3, videos_per_week=1),
         make_prefs("a", topics=["sql"], interests=["ai"], slots=EVENING, communication="voice")),
        (make_student("b", level=5, videos_per_week=4),
         make_prefs("b", topics=TOPICS, interests=["web", "ai", "games"], slots=[("Monday", "19:30", "23:00")])),
        (make_student("c", level=6, videos_per_week=9),
         make_prefs("c", topics=["SQL", "python"], communication="any")),
    ]
    caps = {
        "level_compatibility": 25,
        "goal_alignment": 20,
        "schedule_overlap": 20,
        "learning_pace_match": 15,
        "interests_overlap": 10,
        "communication_style_fit": 10,
    }
    for s1, p1 in students:
        for s2, p2 in students:
            forward = calculate_compatibility(s1, s2, p1, p2)
            backward = calculate_compatibility(s2, s1, p2, p1)
            assert forward.total_score == backward.total_score
            assert forward.breakdown == backward.breakdown

            terms = forward.breakdown.model_dump()
            for name, cap in caps.items():
                assert 0 <= terms[name] <= cap
            assert terms["communication_style_fit"] >= 5
            assert forward.total_score == round(sum(terms.values()))
            assert 5 <= forward.total_score <= 100


def test_score_is_deterministic(make_student, make_prefs):
    args = (
        make_student("a", videos_per_week=2), make_student("b", level=6, videos_per_week=3),
        make_prefs("a", topics=TOPICS, slots=EVENING), make_prefs("b", topics=["react"], slots=EVENING),
    )
    assert calculate_compatibility(*args) == calculate_compatibility(*args)


# ── Pace and pool query ──────────────────────────────────────────────────


def test_compute_pace():
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert compute_pace(10, now - timedelta(days=17), now) == 5
    assert compute_pace(7, now - timedelta(weeks=3), now) == 3
    # Same-day signup never divides by zero
    assert compute_pace(3, now, now) == 3
    assert compute_pace(0, now - timedelta(weeks=10), now) == 0


def test_compute_pace_accepts_naive_timestamps():
    now = datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert compute_pace(4, datetime(2025, 2, 15), now) == 2


def test_pipeline_restricts_minors_to_their_age_group(make_student):
    pipeline = build_candidate_pipeline(make_student("kid", level=2, age_group="under-18"), "Europe/Berlin")

    student_match = pipeline[0]["$match"]
    assert student_match["id"] == {"$ne": "kid"}
    assert student_match["level"] == {"$gte": -1, "$lte": 5}
    assert student_match["age_group"] == "under-18"

    pref_match = next(
        stage["$match"] for stage in pipeline[1:] if "$match" in stage
    )
    assert pref_match["preferences.open_to_matching"] == {"$ne": False}
    assert pref_match["preferences.timezone"] == "Europe/Berlin"
    assert {"$limit": 50} in pipeline


def test_pipeline_for_adults_has_no_age_or_timezone_filter(make_student):
    pipeline = build_candidate_pipeline(make_student("grown", level=7, age_group="22+"))

    assert "age_group" not in pipeline[0]["$match"]
    pref_match = next(stage["$match"] for stage in pipeline[1:] if "$match" in stage)
    assert "preferences.timezone" not in pref_match


# ── Ranking ──────────────────────────────────────────────────────────────


@pytest.fixture
def store(monkeypatch, make_student, make_prefs):
    """Patch the ranker's store seam with an in-memory pool around alice."""
    base_prefs = dict(topics=TOPICS, interests=["web", "ai"], slots=EVENING)
    state = {
        "students": {"alice": make_student("alice", level=5)},
        "prefs": {"alice": make_prefs("alice", **base_prefs)},
        "completed": {},
        "peers": {"erin"},
        "pool": [
            (make_student("bob", level=5), make_prefs("bob", **base_prefs)),
            (make_student("cara", level=6),
             make_prefs("cara", topics=["python", "react"], interests=["web"], slots=EVENING, communication="voice")),
            (make_student("dan", level=8),
             make_prefs("dan", topics=["python"], communication="any")),
            (make_student("erin", level=5), make_prefs("erin", **base_prefs)),
            (make_student("finn", level=5), None),
            (make_student("gina", level=5), make_prefs("gina", **base_prefs)),
        ],
        "pool_calls": [],
        "count_calls": [],
    }

    async def fake_get_student(student_id):
        return state["students"].get(student_id)

    async def fake_get_preferences(student_id):
        return state["prefs"].get(student_id)

    async def fake_count(student_id):
        state["count_calls"].append(student_id)
        return state["completed"].get(student_id, 12)

    async def fake_peers(student_id):
        return set(state["peers"])

    async def fake_pool(student, timezone_pref=None, limit=50):
        state["pool_calls"].append((student.id, timezone_pref))
        if isinstance(state["pool"], Exception):
            raise state["pool"]
        return list(state["pool"])

    monkeypatch.setattr(matching, "get_student", fake_get_student)
    monkeypatch.setattr(matching, "get_preferences", fake_get_preferences)
    monkeypatch.setattr(matching, "count_completed_videos", fake_count)
    monkeypatch.setattr(matching, "get_active_peer_ids", fake_peers)
    monkeypatch.setattr(matching, "find_candidate_pool", fake_pool)
    return state


@pytest.mark.asyncio
async def test_find_candidates_filters_excludes_and_sorts(store):
    results = await find_candidates("alice", store["prefs"]["alice"])

    assert [m.student.id for m in results] == ["bob", "gina", "cara"]
    assert [m.match_score.total_score for m in results] == [90, 90, 67]
    assert all(m.match_score.total_score >= MIN_MATCH_SCORE for m in results)
    assert all(m.student.videos_per_week == 3 for m in results)
    assert store["pool_calls"] == [("alice", "America/New_York")]


@pytest.mark.asyncio
async def test_find_candidates_never_returns_existing_connections(store):
    store["peers"] = {"bob", "gina"}
    results = await find_candidates("alice", store["prefs"]["alice"])
    assert [m.student.id for m in results] == ["erin", "cara"]


@pytest.mark.asyncio
async def test_find_candidates_respects_limit(store):
    results = await find_candidates("alice", store["prefs"]["alice"], limit=2)
    assert [m.student.id for m in results] == ["bob", "gina"]


@pytest.mark.asyncio
async def test_find_candidates_skips_pace_lookup_for_ineligible(store):
    await find_candidates("alice", store["prefs"]["alice"])
    assert "erin" not in store["count_calls"]
    assert "finn" not in store["count_calls"]


@pytest.mark.asyncio
async def test_find_candidates_empty_pool(store):
    store["pool"] = []
    assert await find_candidates("alice", store["prefs"]["alice"]) == []


@pytest.mark.asyncio
async def test_find_candidates_unknown_student(store):
    with pytest.raises(StudentNotFoundError):
        await find_candidates("nobody", store["prefs"]["alice"])


@pytest.mark.asyncio
async def test_find_candidates_propagates_query_failure(store):
    store["pool"] = ServerSelectionTimeoutError("no primary")
    with pytest.raises(ServerSelectionTimeoutError):
        await find_candidates("alice", store["prefs"]["alice"])


@pytest.mark.asyncio
async def test_rank_matches_has_no_score_floor(store, make_student, make_prefs):
    store["prefs"].update({
        "bob": make_prefs("bob", topics=TOPICS, interests=["web", "ai"], slots=EVENING),
        "dan": make_prefs("dan", topics=["python"], communication="any"),
    })
    candidates = [
        make_student("dan", level=8),
        make_student("finn", level=5),  # no preferences saved
        make_student("bob", level=5, videos_per_week=3),
    ]

    results = await rank_matches("alice", candidates)

    assert [m.student.id for m in results] == ["bob", "dan"]
    assert results[-1].match_score.total_score < MIN_MATCH_SCORE
    # bob already carried a pace, so only alice and dan were counted
    assert sorted(store["count_calls"]) == ["alice", "dan"]


@pytest.mark.asyncio
async def test_rank_matches_requires_student_preferences(store):
    del store["prefs"]["alice"]
    with pytest.raises(PreferencesNotFoundError):
        await rank_matches("alice", [])


@pytest.mark.asyncio
async def test_rank_matches_unknown_student(store):
    with pytest.raises(StudentNotFoundError):
        await rank_matches("nobody", [])


@pytest.mark.asyncio
async def test_rank_matches_bounds_preference_reads(store, monkeypatch, make_student, make_prefs):
    monkeypatch.setenv("MATCH_ENRICH_CONCURRENCY", "2")
    in_flight = {"now": 0, "peak": 0}

    async def slow_get_preferences(student_id):
        in_flight["now"] += 1
        in_flight["peak"] = max(in_flight["peak"], in_flight["now"])
        await asyncio.sleep(0)
        in_flight["now"] -= 1
        if student_id == "alice":
            return store["prefs"]["alice"]
        return make_prefs(student_id, topics=TOPICS)

    monkeypatch.setattr(matching, "get_preferences", slow_get_preferences)
    candidates = [make_student(f"peer{i}", videos_per_week=3) for i in range(10)]

    results = await rank_matches("alice", candidates)

    assert len(results) == 10
    assert in_flight["peak"] == 2
