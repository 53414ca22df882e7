"""
Tests for configuration loading and validation.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from src.dialer.config import ConfigError, get_config, init_config


class TestConfigLoading:

    def test_reads_environment(self):
        config = get_config()

        assert config.public_host == "test.ngrok.io"
        assert config.port == 7860
        assert config.twilio_phone_number == "+15550001111"
        assert config.completion_model == "gpt-3.5-turbo"

    def test_defaults(self):
        config = get_config()

        assert config.cache_ttl_seconds == 300.0
        assert config.cache_max_entries == 100
        assert config.buffer_chunk_size == 1024
        assert config.buffer_max_size == 16384
        assert config.ring_timeout_seconds == 60
        assert config.max_timeout_attempts == 3
        assert config.session_grace_seconds == 60.0
        assert config.agent_name == "Sarah"

    def test_urls(self):
        config = get_config()

        assert config.ws_url == "wss://test.ngrok.io/ws"
        assert config.base_url == "https://test.ngrok.io"

    def test_bad_numbers_fall_back_to_defaults(self):
        with patch.dict(os.environ, {"PORT": "not-a-port", "CACHE_TTL_SECONDS": "soon"}):
            get_config.cache_clear()
            config = get_config()

        assert config.port == 7860
        assert config.cache_ttl_seconds == 300.0

    def test_groq_model_selection(self):
        with patch.dict(os.environ, {"LLM_PROVIDER": "GROQ", "GROQ_API_KEY": "gsk", "GROQ_MODEL": "llama"}):
            get_config.cache_clear()
            config = get_config()

        assert config.llm_provider == "groq"
        assert config.completion_model == "llama"


class TestValidation:

    def test_valid_config(self):
        assert init_config().public_host == "test.ngrok.io"

    def test_missing_keys_are_listed(self):
        config = replace(get_config(), public_host="", deepgram_api_key="")

        with pytest.raises(ConfigError, match="PUBLIC_HOST, DEEPGRAM_API_KEY"):
            config.validate()

    def test_groq_requires_key(self):
        config = replace(get_config(), llm_provider="groq", groq_api_key="")

        with pytest.raises(ConfigError, match="GROQ_API_KEY"):
            config.validate()

    def test_unknown_provider(self):
        config = replace(get_config(), llm_provider="anthropic")

        with pytest.raises(ConfigError, match="Invalid LLM_PROVIDER"):
            config.validate()

    def test_buffer_sizes_checked(self):
        config = replace(get_config(), buffer_chunk_size=4096, buffer_max_size=1024)

        with pytest.raises(ConfigError, match="BUFFER_CHUNK_SIZE"):
            config.validate()
