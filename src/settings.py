from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config import LLMConfig, llm_config_from_mapping, load_llm_config_from_env


MONOTONICITY_POLICIES = ("warn", "fail")
LLM_MODES = ("template", "llm", "auto")


@dataclass(frozen=True)
class GenerationSettings:
    # 整个会话的目标字数（达到即停止）
    target_words: int = 6000
    # 单个 chunk 的目标字数
    chunk_words: int = 1500
    # chunk 数上限（防止失控）
    max_chunks: int = 20
    rule_count: int = 7
    # 生成失败重试（指数退避 + 抖动）
    max_generation_attempts: int = 3
    retry_base_sleep_s: float = 1.0
    retry_max_sleep_s: float = 12.0
    generate_timeout_s: float = 180.0
    extract_timeout_s: float = 30.0
    # 续写上下文：上一段正文末尾保留字符数 / 时间线最近条数
    context_chars: int = 2000
    timeline_recent_k: int = 8
    # 不可逆 flag 回退：warn（记警告继续）/ fail（写完本 chunk 检查点后终止）
    monotonicity_policy: str = "warn"


@dataclass(frozen=True)
class JobSettings:
    max_workers: int = 2
    # 已结束任务在注册表中的保留时长
    ttl_s: float = 3600.0
    poll_interval_s: float = 2.0


@dataclass(frozen=True)
class AppSettings:
    output_base: str = "outputs"

    # 运行模式：template / llm / auto
    llm_mode: str = "auto"

    # debug：写入运行日志/调用图
    debug: bool = False

    gen: GenerationSettings = field(default_factory=GenerationSettings)
    jobs: JobSettings = field(default_factory=JobSettings)

    # LLM（可选：未配则走模板模式）
    llm: Optional[LLMConfig] = None


def _read_toml(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def _load_dotenv_candidates(config_path: str) -> None:
    """
    自动加载 .env，查找顺序：
    1) config.toml 同目录
    2) 项目根目录
    3) 当前工作目录
    只加载第一个存在的文件，且不覆盖已有环境变量。
    """
    from dotenv import load_dotenv

    candidates = []
    if config_path:
        candidates.append(os.path.join(os.path.dirname(os.path.abspath(config_path)), ".env"))
    candidates.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
    candidates.append(os.path.abspath(".env"))
    for p in candidates:
        if os.path.exists(p):
            load_dotenv(p, override=False)
            break


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = raw.get(name, {})
    return v if isinstance(v, dict) else {}


def _env_str(name: str) -> str:
    return (os.getenv(name, "") or "").strip()


def _pick(cast, env_name: str, cfg: Dict[str, Any], key: str, fallback: Any) -> Any:
    """env > toml > 默认值；转换失败回退到下一层。"""
    v = _env_str(env_name)
    if v:
        try:
            return cast(v)
        except ValueError:
            pass
    if key in cfg:
        try:
            return cast(cfg[key])
        except (TypeError, ValueError):
            pass
    return fallback


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {v!r}")


def load_settings(
    config_path: str = "config.toml",
    *,
    overrides: Optional[Dict[str, Any]] = None,
    load_env_file: bool = True,
) -> AppSettings:
    """
    配置优先级：config.toml < 环境变量 < CLI覆盖（overrides）

    环境变量：
      OUTPUT_BASE, LLM_MODE, DEBUG,
      TARGET_WORDS, CHUNK_WORDS, MAX_CHUNKS, RULE_COUNT,
      MAX_GENERATION_ATTEMPTS, RETRY_BASE_SLEEP_S, GENERATE_TIMEOUT_S, EXTRACT_TIMEOUT_S,
      CONTEXT_CHARS, TIMELINE_RECENT_K, MONOTONICITY_POLICY,
      JOB_MAX_WORKERS, JOB_TTL_S
      LLM_* 由 load_llm_config_from_env() 负责
    """
    if load_env_file:
        _load_dotenv_candidates(config_path)

    raw = _read_toml(config_path)
    cfg_app = _section(raw, "app")
    cfg_gen = _section(raw, "generation")
    cfg_jobs = _section(raw, "jobs")
    cfg_llm = _section(raw, "llm")

    d_gen = GenerationSettings()
    d_jobs = JobSettings()

    values: Dict[str, Any] = {
        "output_base": _pick(str, "OUTPUT_BASE", cfg_app, "output_base", AppSettings.output_base),
        "llm_mode": _pick(str, "LLM_MODE", cfg_app, "llm_mode", AppSettings.llm_mode),
        "debug": _pick(_as_bool, "DEBUG", cfg_app, "debug", AppSettings.debug),
        "target_words": _pick(int, "TARGET_WORDS", cfg_gen, "target_words", d_gen.target_words),
        "chunk_words": _pick(int, "CHUNK_WORDS", cfg_gen, "chunk_words", d_gen.chunk_words),
        "max_chunks": _pick(int, "MAX_CHUNKS", cfg_gen, "max_chunks", d_gen.max_chunks),
        "rule_count": _pick(int, "RULE_COUNT", cfg_gen, "rule_count", d_gen.rule_count),
        "max_generation_attempts": _pick(
            int, "MAX_GENERATION_ATTEMPTS", cfg_gen, "max_generation_attempts", d_gen.max_generation_attempts
        ),
        "retry_base_sleep_s": _pick(float, "RETRY_BASE_SLEEP_S", cfg_gen, "retry_base_sleep_s", d_gen.retry_base_sleep_s),
        "retry_max_sleep_s": _pick(float, "RETRY_MAX_SLEEP_S", cfg_gen, "retry_max_sleep_s", d_gen.retry_max_sleep_s),
        "generate_timeout_s": _pick(float, "GENERATE_TIMEOUT_S", cfg_gen, "generate_timeout_s", d_gen.generate_timeout_s),
        "extract_timeout_s": _pick(float, "EXTRACT_TIMEOUT_S", cfg_gen, "extract_timeout_s", d_gen.extract_timeout_s),
        "context_chars": _pick(int, "CONTEXT_CHARS", cfg_gen, "context_chars", d_gen.context_chars),
        "timeline_recent_k": _pick(int, "TIMELINE_RECENT_K", cfg_gen, "timeline_recent_k", d_gen.timeline_recent_k),
        "monotonicity_policy": _pick(str, "MONOTONICITY_POLICY", cfg_gen, "monotonicity_policy", d_gen.monotonicity_policy),
        "max_workers": _pick(int, "JOB_MAX_WORKERS", cfg_jobs, "max_workers", d_jobs.max_workers),
        "ttl_s": _pick(float, "JOB_TTL_S", cfg_jobs, "ttl_s", d_jobs.ttl_s),
        "poll_interval_s": _pick(float, "JOB_POLL_INTERVAL_S", cfg_jobs, "poll_interval_s", d_jobs.poll_interval_s),
    }

    # CLI覆盖（最后生效；None / 空串视为未指定）
    for k, v in (overrides or {}).items():
        if v is None or (isinstance(v, str) and not v.strip()):
            continue
        values[k] = v.strip() if isinstance(v, str) else v

    # 约束
    llm_mode = str(values["llm_mode"]).strip().lower()
    if llm_mode not in LLM_MODES:
        llm_mode = "auto"
    policy = str(values["monotonicity_policy"]).strip().lower()
    if policy not in MONOTONICITY_POLICIES:
        policy = "warn"

    gen = GenerationSettings(
        target_words=max(1, int(values["target_words"])),
        chunk_words=max(50, int(values["chunk_words"])),
        max_chunks=max(1, int(values["max_chunks"])),
        rule_count=max(1, int(values["rule_count"])),
        max_generation_attempts=max(1, int(values["max_generation_attempts"])),
        retry_base_sleep_s=max(0.0, float(values["retry_base_sleep_s"])),
        retry_max_sleep_s=max(0.0, float(values["retry_max_sleep_s"])),
        generate_timeout_s=max(1.0, float(values["generate_timeout_s"])),
        extract_timeout_s=max(1.0, float(values["extract_timeout_s"])),
        context_chars=max(0, int(values["context_chars"])),
        timeline_recent_k=max(0, int(values["timeline_recent_k"])),
        monotonicity_policy=policy,
    )
    jobs = JobSettings(
        max_workers=max(1, int(values["max_workers"])),
        ttl_s=max(0.0, float(values["ttl_s"])),
        poll_interval_s=max(0.1, float(values["poll_interval_s"])),
    )

    # LLM：优先 env，否则用 toml 的 [llm]
    llm_cfg = load_llm_config_from_env()
    if llm_cfg is None and cfg_llm:
        llm_cfg = llm_config_from_mapping(cfg_llm)

    return AppSettings(
        output_base=str(values["output_base"]).strip() or AppSettings.output_base,
        llm_mode=llm_mode,
        debug=bool(values["debug"]),
        gen=gen,
        jobs=jobs,
        llm=llm_cfg,
    )
