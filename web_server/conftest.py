import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

# Add the web_server directory to sys.path to resolve internal imports
web_server_dir = Path(__file__).parent.absolute()
if str(web_server_dir) not in sys.path:
    sys.path.insert(0, str(web_server_dir))

from models.student import MatchingPreferences, StudentProfile, TimeSlot


@pytest.fixture
def make_student():
    def _make(
        student_id: str,
        level: int = 5,
        age_group: str = "22+",
        videos_per_week: Optional[int] = None,
        weeks_ago: int = 4,
    ) -> StudentProfile:
        return StudentProfile(
            id=student_id,
            name=student_id.capitalize(),
            level=level,
            current_module=2,
            age_group=age_group,
            created_at=datetime.now(timezone.utc) - timedelta(weeks=weeks_ago, hours=1),
            videos_per_week=videos_per_week,
        )

    return _make


@pytest.fixture
def make_prefs():
    def _make(
        student_id: str,
        topics: Optional[list[str]] = None,
        interests: Optional[list[str]] = None,
        slots: Optional[list[tuple[str, str, str]]] = None,
        communication: Optional[str] = "text",
        timezone_name: str = "America/New_York",
    ) -> MatchingPreferences:
        return MatchingPreferences(
            student_id=student_id,
            weekly_availability_hours=6,
            timezone=timezone_name,
            preferred_study_times=[
                TimeSlot(day=d, start_time=s, end_time=e) for d, s, e in (slots or [])
            ],
            primary_goal="Ship a portfolio project",
            interested_topics=topics or [],
            project_interests=interests or [],
            learning_style="hands-on",
            communication_preference=communication,
        )

    return _make
