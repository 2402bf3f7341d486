import pytest
from unittest.mock import patch
from coach_client.config.settings import CoachClientConfig, create_example_env_file, load_config
from pathlib import Path
import tempfile
import os

class TestConfig:
    def test_default_config(self):
        config = CoachClientConfig(gemini_api_key="test_key")
        assert config.model == "gemini-2.0-flash-exp"
        assert config.sample_rate == 44100
        assert config.buffer_size == 4096
        assert config.max_messages_per_minute == 100
        assert config.heartbeat_interval_s == 30.0

    def test_config_with_custom_values(self):
        config = CoachClientConfig(
            gemini_api_key="test_key",
            model="gemini-exp",
            sample_rate=16000
        )
        assert config.model == "gemini-exp"
        assert config.sample_rate == 16000

    @patch.dict(os.environ, {
        "GEMINI_API_KEY": "test_key",
        "GEMINI_MODEL": "gemini-exp",
        "SAMPLE_RATE": "16000",
        "INPUT_DEVICE": "2",
        "MAX_MESSAGES_PER_MINUTE": "50"
    }, clear=True)
    def test_load_config_from_env(self):
        config = load_config(Path("does-not-exist.env"))
        assert config.gemini_api_key == "test_key"
        assert config.model == "gemini-exp"
        assert config.sample_rate == 16000
        assert config.input_device == 2
        assert config.max_messages_per_minute == 50

    @patch.dict(os.environ, {"GEMINI_API_KEY": "test_key", "INPUT_DEVICE": ""}, clear=True)
    def test_blank_input_device_means_default(self):
        config = load_config(Path("does-not-exist.env"))
        assert config.input_device is None

    def test_missing_api_key(self):
        with pytest.raises(ValueError):
            CoachClientConfig(gemini_api_key="")

    @patch.dict(os.environ, {}, clear=True)
    def test_load_config_without_api_key(self):
        with pytest.raises(ValueError, match="GEMINI_API_KEY"):
            load_config(Path("does-not-exist.env"))

    @patch.dict(os.environ, {"GEMINI_API_KEY": "test_key", "SAMPLE_RATE": "0"}, clear=True)
    def test_invalid_sample_rate(self):
        with pytest.raises(ValueError):
            load_config(Path("does-not-exist.env"))

    @patch.dict(os.environ, {}, clear=True)
    def test_config_from_temp_file(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.env', delete=False) as f:
            f.write("GEMINI_API_KEY=temp_key\n")
            f.write("CHUNK_SECONDS=0.5\n")
            temp_path = f.name

        try:
            config = load_config(Path(temp_path))
            assert config.gemini_api_key == "temp_key"
            assert config.chunk_seconds == 0.5
        finally:
            os.unlink(temp_path)

    @patch.dict(os.environ, {}, clear=True)
    def test_example_env_file_loads(self, tmp_path):
        path = tmp_path / ".env.example"
        create_example_env_file(path)
        assert "GEMINI_API_KEY=" in path.read_text()

        config = load_config(path)
        assert config.gemini_api_key == "your_api_key_here"
        assert config.buffer_size == 4096
        assert config.input_device is None
