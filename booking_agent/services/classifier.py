"""Text-classification collaborator backed by Claude through LangChain.

``match_intent`` maps a caller's free-text request onto at most one of the
practice's appointment types.  The model is asked for a bare ID; anything
that is not one of the candidate IDs counts as "no match", which is the
matching threshold the handler relies on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage

from booking_agent.errors import ClassificationError
from booking_agent.prompts import (
    APPOINTMENT_MATCH_SYSTEM_PROMPT,
    NO_MATCH,
    build_appointment_match_prompt,
)
from booking_agent.services.metrics import MetricsClient

logger = logging.getLogger(__name__)


class IntentClassifier(Protocol):
    def match_intent(self, free_text: str, candidates: Sequence[dict[str, str]]) -> str | None: ...


def _build_classifier_llm(model: str, api_key: str) -> ChatAnthropic:
    """Build a small deterministic LLM for single-ID classification."""
    return ChatAnthropic(
        model=model,
        api_key=api_key,
        temperature=0.0,
        max_tokens=50,
    )


class AppointmentTypeClassifier:
    """Claude-backed implementation of :class:`IntentClassifier`."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        metrics: MetricsClient | None = None,
        llm=None,
    ):
        self._model = model
        self._llm = llm or _build_classifier_llm(model, api_key)
        self._metrics = metrics or MetricsClient()

    def match_intent(self, free_text: str, candidates: Sequence[dict[str, str]]) -> str | None:
        """Return the matched candidate ID, or ``None`` when nothing fits.

        Raises :class:`ClassificationError` when the model call itself fails.
        """
        if not candidates:
            return None

        prompt = build_appointment_match_prompt(free_text, candidates)
        t0 = time.perf_counter()
        try:
            response = self._llm.invoke(
                [SystemMessage(content=APPOINTMENT_MATCH_SYSTEM_PROMPT), HumanMessage(content=prompt)]
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure(
                "anthropic", "match_intent",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise ClassificationError(f"Appointment type classification failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_success("anthropic", "match_intent", latency_ms=elapsed)

        answer = str(response.content).strip().strip('"').strip()
        logger.debug("Classifier (%s) answered %r in %.0fms", self._model, answer, elapsed)

        if not answer or answer.upper() == NO_MATCH:
            return None
        valid_ids = {str(c["id"]) for c in candidates}
        if answer not in valid_ids:
            logger.info("Classifier returned unknown id %r; treating as no match", answer)
            return None
        return answer
