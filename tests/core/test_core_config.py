"""
Tests for settings validation and structured logging.
"""

import json
import logging

import pytest
from pydantic import ValidationError

from knowledge_engine.core.config import Settings
from knowledge_engine.core.logging_config import StructuredFormatter, mask_credential


def test_credential_lists_parse_from_comma_separated_string():
    config = Settings(GEMINI_API_KEYS="key-one, key-two,,", ENVIRONMENT="test")

    assert config.GEMINI_API_KEYS == ["key-one", "key-two"]
    assert config.provider_credentials == ["key-one", "key-two"]


def test_provider_credentials_follow_selected_provider():
    config = Settings(LLM_PROVIDER="OpenAI", OPENAI_API_KEYS=["sk-1"], GEMINI_API_KEYS=["gm-1"], ENVIRONMENT="test")

    assert config.LLM_PROVIDER == "openai"
    assert config.provider_credentials == ["sk-1"]


def test_unknown_provider_rejected():
    with pytest.raises(ValidationError):
        Settings(LLM_PROVIDER="cohere", ENVIRONMENT="test")


def test_thresholds_must_be_unit_interval():
    with pytest.raises(ValidationError):
        Settings(RETRIEVAL_MIN_SIMILARITY=1.5, ENVIRONMENT="test")


def test_overlap_must_be_smaller_than_chunk():
    with pytest.raises(ValidationError):
        Settings(CHUNK_MAX_LENGTH=100, CHUNK_OVERLAP=100, ENVIRONMENT="test")


def test_production_requires_credentials():
    with pytest.raises(ValidationError):
        Settings(ENVIRONMENT="production", GEMINI_API_KEYS=[])

    assert Settings(ENVIRONMENT="production", GEMINI_API_KEYS=["gm-1"]).provider_credentials == ["gm-1"]


def test_broker_defaults_to_redis_url():
    assert Settings(REDIS_URL="redis://cache:6379", ENVIRONMENT="test").broker_url == "redis://cache:6379"
    assert Settings(
        REDIS_URL="redis://cache:6379",
        CELERY_BROKER_URL="redis://broker:6379/1",
        ENVIRONMENT="test",
    ).broker_url == "redis://broker:6379/1"


def test_structured_formatter_emits_context_fields():
    record = logging.LogRecord("knowledge_engine.test", logging.INFO, __file__, 10, "Claimed job", None, None)
    record.job_id = "job-1"
    record.agent_id = 7
    record.unrelated = "dropped"

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "Claimed job"
    assert payload["level"] == "INFO"
    assert payload["job_id"] == "job-1"
    assert payload["agent_id"] == 7
    assert "unrelated" not in payload


def test_mask_credential_hides_secret():
    assert mask_credential("AIzaSyExampleKey1234") == "...1234"
    assert mask_credential("abc") == "****"
    assert mask_credential("") == "<empty>"
