"""Prompts for the appointment-type classifier."""

from __future__ import annotations

from collections.abc import Sequence

NO_MATCH = "NO_MATCH"

APPOINTMENT_MATCH_SYSTEM_PROMPT = f"""You are an expert assistant for a dental office.
Your task is to match a patient's stated reason for calling with the most appropriate
appointment type from the provided list. The list includes appointment type IDs, names,
and associated keywords.

## Rules
- Respond ONLY with the ID of the single best matching appointment type.
- If no appointment type clearly fits the patient's request, respond with {NO_MATCH}.
- Prefer matches where the request aligns with the keywords or the name of the type.
- Understand everyday patient language for dental problems.
- Never return more than one ID and never explain your answer.

## Examples
- "my tooth hurts badly" with an "Emergency Exam" type (keywords: toothache, pain, urgent)
  → return that type's ID.
- "I need a cleaning" with a "Routine Cleaning" type → return that type's ID.
- "I want to discuss veneers" with no cosmetic type listed → return {NO_MATCH}.
"""

APPOINTMENT_MATCH_USER_TEMPLATE = """Patient's reason for calling: "{request}"

Available appointment types:
{types}

Which appointment type ID is the best match? (Return ONLY the ID or "{no_match}")"""


def build_appointment_match_prompt(request: str, candidates: Sequence[dict[str, str]]) -> str:
    """Format the user turn for one classification call.

    Each candidate is ``{"id", "name", "keywords"}``.
    """
    lines = [
        f"ID: {c['id']}, Name: {c['name']}, Keywords: {c.get('keywords') or 'None'}"
        for c in candidates
    ]
    return APPOINTMENT_MATCH_USER_TEMPLATE.format(
        request=request.strip(),
        types="\n".join(lines),
        no_match=NO_MATCH,
    )
