"""Tests for the Claude-backed appointment-type classifier."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from booking_agent.errors import ClassificationError
from booking_agent.prompts import NO_MATCH, build_appointment_match_prompt
from booking_agent.services.classifier import AppointmentTypeClassifier
from booking_agent.services.metrics import MetricsClient

CANDIDATES = [
    {"id": "100", "name": "Adult Cleaning", "keywords": "cleaning, checkup"},
    {"id": "200", "name": "Emergency Exam", "keywords": "toothache, pain"},
]


def _classifier(answer=None, error=None) -> tuple[AppointmentTypeClassifier, MagicMock]:
    llm = MagicMock()
    if error is not None:
        llm.invoke.side_effect = error
    else:
        llm.invoke.return_value = MagicMock(content=answer)
    metrics = MetricsClient(enabled=False)
    return AppointmentTypeClassifier(model="test-model", api_key="k", metrics=metrics, llm=llm), llm


class TestMatchIntent:
    def test_returns_candidate_id(self):
        classifier, llm = _classifier("200")
        assert classifier.match_intent("my tooth is killing me", CANDIDATES) == "200"
        system, human = llm.invoke.call_args.args[0]
        assert "ID: 200, Name: Emergency Exam" in human.content

    @pytest.mark.parametrize("answer", [NO_MATCH, "no_match", "", "999", "I think cleaning"])
    def test_no_match_and_unknown_ids_return_none(self, answer):
        classifier, _ = _classifier(answer)
        assert classifier.match_intent("veneers", CANDIDATES) is None

    def test_strips_quotes_around_answer(self):
        classifier, _ = _classifier(' "100" ')
        assert classifier.match_intent("a cleaning", CANDIDATES) == "100"

    def test_empty_candidate_list_skips_model(self):
        classifier, llm = _classifier("100")
        assert classifier.match_intent("a cleaning", []) is None
        llm.invoke.assert_not_called()

    def test_model_failure_raises_classification_error(self):
        classifier, _ = _classifier(error=RuntimeError("overloaded"))
        with pytest.raises(ClassificationError):
            classifier.match_intent("a cleaning", CANDIDATES)
        error_metric = [m for m in classifier._metrics._buffer if m["MetricName"] == "ExternalAPI/ErrorCount"]
        assert len(error_metric) == 1


class TestPrompt:
    def test_prompt_lists_candidates_and_no_match_token(self):
        prompt = build_appointment_match_prompt("  a cleaning ", [{"id": "1", "name": "Cleaning", "keywords": ""}])
        assert 'Patient\'s reason for calling: "a cleaning"' in prompt
        assert "ID: 1, Name: Cleaning, Keywords: None" in prompt
        assert NO_MATCH in prompt
