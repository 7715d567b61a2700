"""Tests for settings validation and lenient model-output parsing."""

from __future__ import annotations

import json

import pytest
import structlog
from pydantic import ValidationError

from graphmem.config.settings import (
    CompletionSettings,
    LoggingSettings,
    RetrievalSettings,
    StorageSettings,
)
from graphmem.infra.logging import bind_invocation, setup_logging
from graphmem.llm.json_output import extract_json_object, strip_fences
from graphmem.memory.schemas import (
    FollowUpDecision,
    ReconcileDecision,
    StoreItem,
    parse_model_output,
)


class TestSettings:
    def test_completion_requires_api_key(self, monkeypatch) -> None:
        monkeypatch.delenv("COMPLETION_API_KEY", raising=False)
        with pytest.raises(ValidationError):
            CompletionSettings()

    def test_env_prefix(self, monkeypatch) -> None:
        monkeypatch.setenv("RETRIEVAL_MAX_FACTS", "7")
        monkeypatch.setenv("STORAGE_RECONCILE_THRESHOLD", "0.6")
        assert RetrievalSettings().max_facts == 7
        assert StorageSettings().reconcile_threshold == 0.6

    def test_ranges_validated(self) -> None:
        with pytest.raises(ValidationError):
            RetrievalSettings(global_score_floor=1.5)
        with pytest.raises(ValidationError):
            RetrievalSettings(template_max_per_group=0)
        with pytest.raises(ValidationError):
            StorageSettings(reconcile_threshold=-0.1)
        with pytest.raises(ValidationError):
            CompletionSettings(api_key="k", classifier_temperature=3.0)

    def test_log_level_normalised(self) -> None:
        assert LoggingSettings(level="debug").level == "DEBUG"
        with pytest.raises(ValidationError):
            LoggingSettings(level="verbose")


class TestJsonOutput:
    def test_strip_fences_and_think(self) -> None:
        assert strip_fences("<think>hmm</think>```json\n{\"a\": 1}\n```") == '{"a": 1}'

    def test_extract_embedded_object(self) -> None:
        assert extract_json_object('Sure! {"a": [1, 2]} hope that helps') == {"a": [1, 2]}
        assert extract_json_object("[1, 2]") is None
        assert extract_json_object("") is None


class TestSchemas:
    def test_store_item_type_aliases(self) -> None:
        assert StoreItem(content="x", type="Preference").type == "opinion"
        with pytest.raises(ValidationError):
            StoreItem(content="x", type="entity")

    def test_reconcile_decision_drops_items_without_id(self) -> None:
        decision, err = parse_model_output(
            ReconcileDecision,
            '{"results": [{"id": "a", "verdict": "no conflict"}, {"verdict": "KEEP"}]}',
        )
        assert err is None
        assert [(r.id, r.verdict) for r in decision.results] == [("a", "KEEP")]

    def test_follow_up_decision_defaults(self) -> None:
        decision, _ = parse_model_output(FollowUpDecision, '{"resolved_entities": ["Sarah"]}')
        assert decision.resolved_entities[0].name == "Sarah"
        assert not decision.retrieval_needed and not decision.storage_needed

    def test_parse_failure_reports_reason(self) -> None:
        decision, err = parse_model_output(ReconcileDecision, '{"results": 5}')
        assert decision is None
        assert err.startswith("schema validation failed")


class TestLogging:
    def test_setup_logging_configures_structlog(self) -> None:
        try:
            setup_logging(json_output=False, log_level="debug")
            assert structlog.is_configured()
        finally:
            structlog.reset_defaults()

    def test_events_carry_component_and_invocation(self, capsys) -> None:
        try:
            setup_logging(json_output=True, log_level="INFO")
            with bind_invocation("s1", "retrieve"):
                structlog.get_logger().info("memory_retrieved", path="full")
            structlog.get_logger().debug("hidden")
        finally:
            structlog.reset_defaults()

        lines = capsys.readouterr().err.strip().splitlines()
        assert len(lines) == 1
        event = json.loads(lines[0])
        assert event["event"] == "memory_retrieved"
        assert event["component"] == "graphmem"
        assert (event["session_id"], event["operation"]) == ("s1", "retrieve")
        assert structlog.contextvars.get_contextvars() == {}
