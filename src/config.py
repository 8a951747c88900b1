from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse, urlunparse


@dataclass(frozen=True)
class LLMConfig:
    """
    OpenAI 兼容的聊天模型配置（生成与抽取共用同一个 endpoint）。
    - temperature:         正文生成
    - extract_temperature: 状态抽取（默认 0，尽量确定性）
    """

    base_url: str
    api_key: str
    model: str
    temperature: float = 0.8
    extract_temperature: float = 0.0
    max_tokens: Optional[int] = None
    extract_max_tokens: Optional[int] = 1500
    top_p: Optional[float] = None
    timeout: Optional[float] = None
    # 其它 OpenAI 兼容的额外参数（尽量少用）
    model_kwargs: Dict[str, Any] = field(default_factory=dict)

    def for_extraction(self) -> "LLMConfig":
        return replace(self, temperature=self.extract_temperature, max_tokens=self.extract_max_tokens)


def normalize_base_url(base_url: str) -> str:
    # 只填了域名时补齐 /v1，例如 https://api.deepseek.com -> https://api.deepseek.com/v1
    base_url = (base_url or "").strip()
    parsed = urlparse(base_url)
    if parsed.scheme and parsed.netloc and parsed.path in ("", "/"):
        return urlunparse((parsed.scheme, parsed.netloc, "/v1", "", "", ""))
    return base_url


def _as_int(v: Any) -> Optional[int]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _as_float(v: Any) -> Optional[float]:
    if v is None or (isinstance(v, str) and not v.strip()):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def llm_config_from_mapping(raw: Mapping[str, Any]) -> Optional[LLMConfig]:
    """config.toml 的 [llm] 段 -> LLMConfig；必填项缺失返回 None。"""
    base_url = str(raw.get("base_url", "") or "").strip()
    api_key = str(raw.get("api_key", "") or "").strip()
    model = str(raw.get("model", "") or "").strip()
    if not (base_url and api_key and model):
        return None
    temperature = _as_float(raw.get("temperature"))
    extract_temperature = _as_float(raw.get("extract_temperature"))
    extract_max_tokens = _as_int(raw.get("extract_max_tokens"))
    return LLMConfig(
        base_url=normalize_base_url(base_url),
        api_key=api_key,
        model=model,
        temperature=LLMConfig.temperature if temperature is None else temperature,
        extract_temperature=LLMConfig.extract_temperature if extract_temperature is None else extract_temperature,
        max_tokens=_as_int(raw.get("max_tokens")),
        extract_max_tokens=LLMConfig.extract_max_tokens if extract_max_tokens is None else extract_max_tokens,
        top_p=_as_float(raw.get("top_p")),
        timeout=_as_float(raw.get("timeout")),
    )


def load_llm_config_from_env() -> LLMConfig | None:
    """
    环境变量：LLM_BASE_URL / LLM_API_KEY / LLM_MODEL（必填），
    LLM_TEMPERATURE / LLM_EXTRACT_TEMPERATURE / LLM_MAX_TOKENS / LLM_EXTRACT_MAX_TOKENS / LLM_TOP_P / LLM_TIMEOUT（可选）。
    """
    keys = {
        "base_url": "LLM_BASE_URL",
        "api_key": "LLM_API_KEY",
        "model": "LLM_MODEL",
        "temperature": "LLM_TEMPERATURE",
        "extract_temperature": "LLM_EXTRACT_TEMPERATURE",
        "max_tokens": "LLM_MAX_TOKENS",
        "extract_max_tokens": "LLM_EXTRACT_MAX_TOKENS",
        "top_p": "LLM_TOP_P",
        "timeout": "LLM_TIMEOUT",
    }
    raw = {k: os.getenv(env, "").strip() for k, env in keys.items()}
    return llm_config_from_mapping(raw)
