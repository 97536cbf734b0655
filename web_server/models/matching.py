from enum import Enum

from pydantic import BaseModel, Field

from models.student import MatchingPreferences, StudentProfile

# Upper bound on ids accepted by the rank endpoint in one call
MAX_RANK_CANDIDATES = 100


class ConfidenceLevel(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"


class MatchScoreBreakdown(BaseModel):
    level_compatibility: float = 0      # max 25
    goal_alignment: float = 0           # max 20
    schedule_overlap: float = 0         # max 20
    learning_pace_match: float = 0      # max 15
    interests_overlap: float = 0        # max 10
    communication_style_fit: float = 0  # max 10


class MatchScore(BaseModel):
    total_score: int
    breakdown: MatchScoreBreakdown
    confidence_level: ConfidenceLevel
    reasoning: str


class MatchCandidate(BaseModel):
    student: StudentProfile
    preferences: MatchingPreferences
    match_score: MatchScore


class MatchResponse(BaseModel):
    student_id: str
    count: int
    matches: list[MatchCandidate]


class RankRequest(BaseModel):
    """Body of POST /students/{id}/matches/rank."""
    candidate_ids: list[str] = Field(max_length=MAX_RANK_CANDIDATES)


class AICompatibility(BaseModel):
    """Advisory score from the language model, never a ranking input."""
    score: int = Field(ge=0, le=100)
    reasons: list[str] = []
    concerns: list[str] = []
