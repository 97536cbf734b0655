import json
import logging
import os
import re
from typing import Optional

import httpx

from models.matching import AICompatibility
from models.student import MatchingPreferences, StudentProfile

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"


def unavailable() -> AICompatibility:
    return AICompatibility(score=0, reasons=[], concerns=["AI analysis unavailable"])


def _profile_text(student: StudentProfile, prefs: MatchingPreferences) -> str:
    return (
        f"- Level {student.level}, Module {student.current_module}\n"
        f"- Learning pace: {student.videos_per_week or 0} videos/week\n"
        f"- Timezone: {prefs.timezone or 'N/A'}\n"
        f"- Availability: {prefs.weekly_availability_hours:g} hours/week\n"
        f"- Goals: {prefs.primary_goal or 'N/A'}\n"
        f"- Interests: {', '.join(prefs.interested_topics)}\n"
        f"- Learning style: {prefs.learning_style.value if prefs.learning_style else 'N/A'}\n"
        f"- Communication preference: "
        f"{prefs.communication_preference.value if prefs.communication_preference else 'N/A'}"
    )


def build_prompt(
    student: StudentProfile,
    candidate: StudentProfile,
    student_prefs: MatchingPreferences,
    candidate_prefs: MatchingPreferences,
) -> str:
    return f"""Analyze compatibility between these two students for study partnership:

Student A:
{_profile_text(student, student_prefs)}

Student B:
{_profile_text(candidate, candidate_prefs)}

Rate compatibility (0-100) based on:
1. Skill level match - are they at similar learning stages?
2. Learning goals alignment - do they want similar outcomes?
3. Availability overlap - can they actually study together?
4. Communication style compatibility - will they work well together?
5. Complementary skills/interests - can they learn from each other?

Return JSON ONLY:
{{
  "score": <number 0-100>,
  "reasons": ["reason 1", "reason 2", "reason 3"],
  "concerns": ["concern 1 (if any)", "concern 2 (if any)"]
}}"""


def parse_reply(content: str) -> AICompatibility:
    """Parse the model's reply. Raises ValueError on anything malformed."""
    # Strip markdown fences if present
    content = re.sub(r"^```(?:json)?\s*", "", content.strip())
    content = re.sub(r"\s*```$", "", content.strip())

    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON object")
    score = data.get("score")
    if isinstance(score, float):
        data["score"] = round(score)
    # Models sometimes send null instead of an empty list
    for key in ("reasons", "concerns"):
        if data.get(key) is None:
            data[key] = []
    return AICompatibility(**data)


class AICompatibilityAnalyzer:
    """Advisory second opinion on a pair, backed by an OpenRouter chat model.

    Never raises: any provider, network or parsing failure yields
    ``unavailable()``. Pass ``client`` to share (or fake) the HTTP client; an
    injected client is not closed by ``aclose``.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_env(cls) -> "AICompatibilityAnalyzer":
        return cls(
            api_key=os.getenv("OPENROUTER_API_KEY"),
            model=os.getenv("OPENROUTER_MODEL", DEFAULT_MODEL),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def analyze(
        self,
        student: StudentProfile,
        candidate: StudentProfile,
        student_prefs: MatchingPreferences,
        candidate_prefs: MatchingPreferences,
    ) -> AICompatibility:
        if not self.api_key:
            return unavailable()

        prompt = build_prompt(student, candidate, student_prefs, candidate_prefs)
        try:
            resp = await self._client.post(
                OPENROUTER_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "max_tokens": 500,
                    "messages": [{"role": "user", "content": prompt}],
                },
            )
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
            return parse_reply(content)
        except Exception as exc:
            logger.warning(
                "AI compatibility analysis failed for %s/%s: %s",
                student.id, candidate.id, exc,
            )
            return unavailable()
