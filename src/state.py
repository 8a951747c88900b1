from typing import TypedDict, Dict, Any, List, Optional


class ChunkRunState(TypedDict, total=False):
    # === 会话级（整个循环不变）===
    session_id: str
    user_params: Dict[str, Any]
    # GenerationSettings
    settings: Any
    # 总目标字数（user_params 可覆盖 settings.target_words）
    target_words: int
    # CanonStateStore：本会话唯一的规范状态
    store: Any
    # 外部能力：generate(prompt_context, state, chunk_index) / extract(prose, state)
    generator: Any
    extractor: Any
    # FileCheckpointWriter
    checkpoint_writer: Any
    logger: Any
    # threading.Event：只在 chunk 之间检查
    cancel_event: Any
    # 每写完一个检查点回调一次：on_checkpoint(checkpoint)
    on_checkpoint: Any

    # === 进度（跨 chunk 累积）===
    last_chunk_index: int
    cumulative_word_count: int
    chunk_texts: List[str]
    checkpoints: List[Any]
    warnings: List[str]
    # running / complete / failed / cancelled
    status: str
    error: str
    stop_reason: str

    # === 当前 chunk（checkpoint 节点结束时清空）===
    chunk_index: int
    chunk_prose: str
    chunk_word_count: int
    # StateDelta
    state_delta: Any
    chunk_warnings: List[str]
    applied_changes: List[str]
    # 严格模式下的不可逆 flag 违规：写完本 chunk 检查点后终止
    pending_failure: Optional[str]
