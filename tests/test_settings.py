"""
Settings precedence: config.toml < environment < CLI overrides.
"""

import pytest

from config import normalize_base_url
from settings import load_settings


_ENV_NAMES = (
    "OUTPUT_BASE", "LLM_MODE", "DEBUG",
    "TARGET_WORDS", "CHUNK_WORDS", "MAX_CHUNKS", "RULE_COUNT",
    "MAX_GENERATION_ATTEMPTS", "RETRY_BASE_SLEEP_S", "RETRY_MAX_SLEEP_S",
    "GENERATE_TIMEOUT_S", "EXTRACT_TIMEOUT_S", "CONTEXT_CHARS", "TIMELINE_RECENT_K",
    "MONOTONICITY_POLICY", "JOB_MAX_WORKERS", "JOB_TTL_S", "JOB_POLL_INTERVAL_S",
    "LLM_BASE_URL", "LLM_API_KEY", "LLM_MODEL", "LLM_TEMPERATURE", "LLM_EXTRACT_TEMPERATURE",
    "LLM_MAX_TOKENS", "LLM_EXTRACT_MAX_TOKENS", "LLM_TOP_P", "LLM_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[app]
output_base = "runs"
llm_mode = "template"

[generation]
target_words = 4000
chunk_words = 800
monotonicity_policy = "fail"

[jobs]
max_workers = 4

[llm]
base_url = "https://api.example.com"
api_key = "sk-test"
model = "demo-model"
temperature = 0.5
""",
        encoding="utf-8",
    )
    return str(path)


class TestLoadSettings:

    def test_defaults_without_config(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.toml"), load_env_file=False)
        assert s.gen.target_words == 6000
        assert s.gen.chunk_words == 1500
        assert s.gen.rule_count == 7
        assert s.gen.monotonicity_policy == "warn"
        assert s.llm is None

    def test_toml_values(self, config_file):
        s = load_settings(config_file, load_env_file=False)
        assert s.output_base == "runs"
        assert s.llm_mode == "template"
        assert s.gen.target_words == 4000
        assert s.gen.monotonicity_policy == "fail"
        assert s.jobs.max_workers == 4
        assert s.llm.base_url == "https://api.example.com/v1"
        assert s.llm.temperature == 0.5
        assert s.llm.for_extraction().temperature == 0.0

    def test_env_overrides_toml(self, config_file, monkeypatch):
        monkeypatch.setenv("TARGET_WORDS", "2500")
        monkeypatch.setenv("MONOTONICITY_POLICY", "warn")
        s = load_settings(config_file, load_env_file=False)
        assert s.gen.target_words == 2500
        assert s.gen.monotonicity_policy == "warn"

    def test_cli_overrides_win(self, config_file, monkeypatch):
        monkeypatch.setenv("TARGET_WORDS", "2500")
        s = load_settings(config_file, overrides={"target_words": 900, "chunk_words": None}, load_env_file=False)
        assert s.gen.target_words == 900
        assert s.gen.chunk_words == 800

    def test_invalid_values_are_clamped_or_reset(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MONOTONICITY_POLICY", "explode")
        monkeypatch.setenv("MAX_CHUNKS", "0")
        monkeypatch.setenv("LLM_MODE", "quantum")
        monkeypatch.setenv("TARGET_WORDS", "not-a-number")
        s = load_settings(str(tmp_path / "missing.toml"), load_env_file=False)
        assert s.gen.monotonicity_policy == "warn"
        assert s.gen.max_chunks == 1
        assert s.llm_mode == "auto"
        assert s.gen.target_words == 6000

    def test_dotenv_next_to_config_is_loaded(self, tmp_path, monkeypatch):
        # 先 setenv 再 delenv，测试结束后 .env 写入的值会被撤销
        monkeypatch.setenv("CHUNK_WORDS", "1")
        monkeypatch.delenv("CHUNK_WORDS")
        (tmp_path / ".env").write_text("CHUNK_WORDS=640\n", encoding="utf-8")
        config = tmp_path / "config.toml"
        config.write_text("", encoding="utf-8")
        s = load_settings(str(config))
        assert s.gen.chunk_words == 640


class TestBaseUrl:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("https://api.deepseek.com", "https://api.deepseek.com/v1"),
            ("https://api.deepseek.com/", "https://api.deepseek.com/v1"),
            ("http://localhost:8000/v1", "http://localhost:8000/v1"),
            ("https://gateway.example.com/openai/v1", "https://gateway.example.com/openai/v1"),
        ],
    )
    def test_normalize_base_url(self, raw, expected):
        assert normalize_base_url(raw) == expected
