from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Dict, Tuple

from canon_state import CanonStateStore
from checkpoints import FileCheckpointWriter
from debug_log import RunLogger, build_call_graph_mermaid_by_chunk, load_events
from generators import LLMChunkGenerator, LLMDeltaExtractor, TemplateChunkGenerator, TemplateDeltaExtractor
from jobs import JobRunner
from llm import try_get_llm_pair
from orchestrator import ChunkOrchestrator, RunResult
from settings import AppSettings, load_settings
from storage import get_session_dir, new_session_id, write_text


def _read_params_file(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"未找到参数文件：{path}")
    # 支持 UTF-8 BOM
    with open(path, "r", encoding="utf-8-sig") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"参数文件必须是 JSON 对象：{path}")
    return data


def build_capabilities(settings: AppSettings, logger: Any) -> Tuple[Any, Any]:
    """
    按运行模式选择生成/抽取能力：
    - template：始终用模板
    - llm：必须初始化成功，否则报错
    - auto：有 LLM 用 LLM，否则回退模板
    """
    if settings.llm_mode == "template":
        return TemplateChunkGenerator(), TemplateDeltaExtractor()
    gen_llm, extract_llm = try_get_llm_pair(settings.llm)
    if gen_llm is None or extract_llm is None:
        if settings.llm_mode == "llm":
            raise RuntimeError("LLM_MODE=llm 但未能初始化LLM（请检查LLM_*环境变量或config.toml的[llm]配置与依赖安装）")
        return TemplateChunkGenerator(), TemplateDeltaExtractor()
    return LLMChunkGenerator(gen_llm, logger=logger), LLMDeltaExtractor(extract_llm, logger=logger)


def _print_result(result: RunResult, session_dir: str) -> None:
    print(f"\n=== Session {result.session_id} ===")
    print(f"状态：{result.status}（{result.stop_reason}）")
    print(f"chunk 数：{len(result.checkpoints)}，总字数：{result.cumulative_word_count}")
    if result.error:
        print(f"错误：{result.error}")
    for w in result.warnings:
        print(f"  警告：{w}")
    print(f"输出目录：{session_dir}")


def _print_sessions(writer: FileCheckpointWriter) -> None:
    session_ids = writer.list_sessions()
    if not session_ids:
        print("（没有会话）")
        return
    for sid in session_ids:
        latest = writer.load_latest(sid)
        if latest is None:
            print(f"- {sid}: 无检查点")
            continue
        summary = CanonStateStore.from_snapshot(latest.state_snapshot).summary()
        print(
            f"- {sid}: chunk {latest.chunk_index}，累计 {latest.cumulative_word_count} 字，"
            f"规则 {summary['rules_active']}/{summary['rules_total']}（违反 {summary['rules_violated']}），"
            f"contamination_level={summary['contamination_level']}"
        )


def _run_in_background(runner: JobRunner, params: Dict[str, Any], session_id: str, poll_s: float) -> Dict[str, Any]:
    job_id = runner.start(params, session_id=session_id)
    print(f"已提交后台任务：{job_id}")
    last_chunk = -1
    try:
        while True:
            st = runner.status(job_id)
            if st["last_chunk_index"] != last_chunk:
                last_chunk = st["last_chunk_index"]
                print(f"  chunk {last_chunk} 完成，累计 {st['cumulative_word_count']} 字")
            if st["status"] != "running":
                return st
            time.sleep(poll_s)
    except KeyboardInterrupt:
        runner.cancel(job_id)
        print("已请求取消（当前 chunk 写完检查点后停止）……")
        return runner.wait(job_id)
    finally:
        runner.shutdown(wait=True)


def main() -> int:
    # Windows 控制台默认编码可能导致中文乱码；显式切换到 UTF-8
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(encoding="utf-8")

    parser = argparse.ArgumentParser(description="分块长文生成：生成 -> 抽取状态 -> 检查点（可中断、可恢复）")
    parser.add_argument("--config", type=str, default="config.toml", help="配置文件路径（TOML，可选）")
    parser.add_argument("--params-file", type=str, default="", help="用户参数 JSON 文件（location / rules / target_words 等）")
    parser.add_argument("--target-words", type=int, default=None, help="总目标字数（覆盖配置）")
    parser.add_argument("--chunk-words", type=int, default=None, help="单个 chunk 目标字数（覆盖配置）")
    parser.add_argument("--max-chunks", type=int, default=None, help="chunk 数上限（覆盖配置）")
    parser.add_argument("--rule-count", type=int, default=None, help="规则槽位数量（覆盖配置）")
    parser.add_argument("--monotonicity-policy", type=str, default="", help="不可逆 flag 回退处理：warn / fail")
    parser.add_argument("--session", type=str, default="", help="会话 id（续写时必填；新会话留空则自动生成）")
    parser.add_argument("--resume", action="store_true", help="从该会话最近一个检查点继续")
    parser.add_argument("--background", action="store_true", help="以后台任务方式运行并轮询进度（Ctrl+C 取消）")
    parser.add_argument("--list-sessions", action="store_true", help="列出输出目录下的会话及最近检查点后退出")
    parser.add_argument("--output-base", type=str, default="", help="输出根目录（覆盖配置）")
    parser.add_argument("--llm-mode", type=str, default="", help="运行模式：template / llm / auto（覆盖配置）")
    parser.add_argument("--debug", action="store_true", help="开启debug日志（写入debug.jsonl与call_graph.md）")
    args = parser.parse_args()

    config_abs = os.path.abspath(args.config)
    settings = load_settings(
        args.config,
        overrides={
            "output_base": args.output_base,
            "llm_mode": args.llm_mode,
            "debug": True if args.debug else None,
            "target_words": args.target_words,
            "chunk_words": args.chunk_words,
            "max_chunks": args.max_chunks,
            "rule_count": args.rule_count,
            "monotonicity_policy": args.monotonicity_policy,
        },
    )

    # output_base 若为相对路径，则相对 config.toml 所在目录解析
    output_base = settings.output_base
    if not os.path.isabs(output_base):
        output_base = os.path.join(os.path.dirname(config_abs), output_base)
    os.makedirs(output_base, exist_ok=True)

    if args.list_sessions:
        _print_sessions(FileCheckpointWriter(output_base))
        return 0

    if args.resume and not args.session.strip():
        raise ValueError("续写模式必须指定 --session")
    if args.resume and args.background:
        raise ValueError("--resume 暂不支持 --background")

    params: Dict[str, Any] = {}
    if args.params_file.strip():
        params_path = args.params_file.strip()
        if not os.path.isabs(params_path):
            params_path = os.path.join(os.path.dirname(config_abs), params_path)
        params = _read_params_file(params_path)

    session_id = args.session.strip() or new_session_id()
    session_dir = get_session_dir(output_base, session_id)
    logger = RunLogger(
        path=os.path.join(session_dir, "debug.jsonl"),
        index_path=os.path.join(session_dir, "debug.index.jsonl"),
        enabled=bool(settings.debug),
    )
    logger.event(
        "run_start",
        session_id=session_id,
        llm_mode=settings.llm_mode,
        resume=bool(args.resume),
        target_words=settings.gen.target_words,
        chunk_words=settings.gen.chunk_words,
        max_chunks=settings.gen.max_chunks,
    )

    with logger.span("llm_init", llm_mode=settings.llm_mode):
        generator, extractor = build_capabilities(settings, logger)

    orchestrator = ChunkOrchestrator(
        generator=generator,
        extractor=extractor,
        checkpoint_writer=FileCheckpointWriter(output_base, logger=logger),
        settings=settings.gen,
        logger=logger,
    )

    if args.background:
        runner = JobRunner(orchestrator, max_workers=settings.jobs.max_workers, ttl_s=settings.jobs.ttl_s, logger=logger)
        st = _run_in_background(runner, params, session_id, settings.jobs.poll_interval_s)
        print(f"\n任务 {st['job_id']} 结束：{st['status']}" + (f"（{st['error']}）" if st.get("error") else ""))
        print(f"输出目录：{session_dir}")
        ok = st["status"] == "complete"
    else:
        if args.resume:
            result = orchestrator.resume(session_id)
        else:
            result = orchestrator.run(params, session_id=session_id)
        _print_result(result, session_dir)
        ok = result.status == "complete"

    # debug：基于日志生成节点调用图
    if settings.debug:
        events = load_events(os.path.join(session_dir, "debug.jsonl"))
        mermaid = build_call_graph_mermaid_by_chunk(events)
        write_text(os.path.join(session_dir, "call_graph.md"), "```mermaid\n" + mermaid + "```\n")

    logger.event("run_end", session_id=session_id, ok=ok)
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
