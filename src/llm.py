from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from config import LLMConfig

if TYPE_CHECKING:
    from langchain_openai import ChatOpenAI  # pragma: no cover


def build_chat_llm(cfg: LLMConfig) -> ChatOpenAI:
    """
    构建 OpenAI 兼容 Chat 模型。
    延迟导入 langchain-openai：模板模式不需要它。
    """
    from langchain_openai import ChatOpenAI

    base_kwargs: Dict[str, Any] = {
        "base_url": cfg.base_url,
        "api_key": cfg.api_key,
        "model": cfg.model,
        "temperature": cfg.temperature,
    }
    if cfg.max_tokens is not None:
        base_kwargs["max_tokens"] = cfg.max_tokens
    if cfg.top_p is not None:
        base_kwargs["top_p"] = cfg.top_p
    if cfg.model_kwargs:
        base_kwargs["model_kwargs"] = dict(cfg.model_kwargs)

    if cfg.timeout is None:
        return ChatOpenAI(**base_kwargs)

    # 不同版本的超时参数名不同：timeout / request_timeout
    for key in ("timeout", "request_timeout"):
        try:
            return ChatOpenAI(**base_kwargs, **{key: cfg.timeout})
        except TypeError:
            continue
    return ChatOpenAI(**base_kwargs)


def try_get_chat_llm(cfg: Optional[LLMConfig]) -> Optional[ChatOpenAI]:
    if cfg is None:
        return None
    try:
        return build_chat_llm(cfg)
    except Exception:
        # 不阻塞模板模式运行
        return None


def try_get_llm_pair(cfg: Optional[LLMConfig]) -> Tuple[Optional[ChatOpenAI], Optional[ChatOpenAI]]:
    """(生成用, 抽取用)；抽取用低温度。任一失败都按 None 处理。"""
    if cfg is None:
        return None, None
    return try_get_chat_llm(cfg), try_get_chat_llm(cfg.for_extraction())
