"""
CLI entry point.

Commands:
- init: Initialize data directory and database
- status: Show engine status
- remember <text> [type] [importance]: Store a memory
- recall <query>: List matching memories
- think <text>: Ask the engine
- index [folder...]: Add folders (optional) and scan all indexed folders
- search <query>: Semantic file search
- evolve: Run one meta-learning pass
- consolidate: Prune decayed memories and merge near-duplicates
- summary: Summarize recent activity
- digest: Learning digest (runs one evolution pass)
- learn <query>: Search indexed files and remember what matches
- goal [add <text> [priority] | update <id> <progress> [status]]: Manage goals
- believe <text> [confidence]: Record a belief
- chat: Interactive mode
- run: Background service (watcher + cycle timer)
- health: Check AI provider connectivity

Flags:
- --debug: Enable debug logging to file
"""

import asyncio
import logging
import signal
import sys

from superbrain.core.config import Settings, get_settings
from superbrain.core.errors import SuperBrainError
from superbrain.core.logging import get_logger, setup_logging

USAGE = """Usage: superbrain [--debug] <command> [args]
Commands: init, status, remember, recall, think, index, search, evolve, consolidate,
          summary, digest, learn, goal, believe, chat, run, health
Flags: --debug (enable debug logging to data/superbrain.log)"""


def main() -> int:
    """Main entry point."""
    settings = get_settings()

    debug_mode = "--debug" in sys.argv
    if debug_mode:
        sys.argv.remove("--debug")

    log_level = logging.DEBUG if debug_mode else logging.WARNING
    log_file = settings.data_dir / "superbrain.log"
    setup_logging(level=log_level, log_file=log_file)
    logger = get_logger("cli")

    if len(sys.argv) < 2:
        print(USAGE)
        return 1

    command, args = sys.argv[1], sys.argv[2:]
    logger.info(f"Command: {command}")

    if command == "init":
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        return asyncio.run(_init(settings))

    handlers = {
        "status": _status,
        "remember": _remember,
        "recall": _recall,
        "think": _think,
        "index": _index,
        "search": _search,
        "evolve": _evolve,
        "consolidate": _consolidate,
        "summary": _summary,
        "digest": _digest,
        "learn": _learn,
        "goal": _goal,
        "believe": _believe,
        "chat": _chat_loop,
        "run": _run_service,
        "health": _health_check,
    }
    handler = handlers.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        print(USAGE)
        return 1

    try:
        return asyncio.run(handler(settings, args))
    except SuperBrainError as e:
        print(f"Error: {e}")
        return 1


async def _open(settings: Settings):
    from superbrain.context import BrainContext

    return await BrainContext.create(settings)


async def _init(settings: Settings) -> int:
    async with await _open(settings):
        pass
    print(f"Created: {settings.db_path}")
    return 0


async def _status(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        status = brain.get_status()
        print(f"Status:      {status.status}")
        print(f"Memories:    {status.memory_count}")
        print(f"AI provider: {status.ai_provider}")
        print(f"Embeddings:  {status.embedding_provider}")
        print(f"Files:       {status.indexed_files} ({status.indexed_chunks} chunks)")
        print(f"Learning:    {status.learning_trend} (exploration {status.exploration_rate:.3f})")
    return 0


async def _remember(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain remember <text> [type] [importance]")
        return 1
    memory_type = args[1] if len(args) > 1 else "semantic"
    try:
        importance = float(args[2]) if len(args) > 2 else 0.5
    except ValueError:
        print(f"Importance must be a number: {args[2]}")
        return 1
    async with await _open(settings) as brain:
        memory_id = await brain.remember(args[0], memory_type, importance)
    print(memory_id)
    return 0


async def _recall(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain recall <query>")
        return 1
    async with await _open(settings) as brain:
        results = await brain.recall(" ".join(args), limit=10)
    if not results:
        print("No memories.")
    for r in results:
        print(f"{r.similarity:.3f}  [{r.memory_type.value}] {r.content}")
    return 0


async def _think(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain think <text>")
        return 1
    async with await _open(settings) as brain:
        thought = await brain.think(" ".join(args))
    print(thought.response)
    print(
        f"  [confidence {thought.confidence:.2f}, {thought.memory_count} memories, "
        f"{thought.strategy}{', AI' if thought.ai_enhanced else ''}]"
    )
    return 0


async def _index(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        for folder in args:
            report = await brain.add_indexed_folder(folder)
            print(f"Added {folder}: {report.files_indexed} files indexed")
        if not brain.app_settings.indexed_folders:
            print("No indexed folders. Usage: superbrain index <folder>...")
            return 1
        report = await brain.scan()
    print(
        f"{report.files_seen} files, {report.files_indexed} indexed, "
        f"{report.files_unchanged} unchanged, {report.files_failed} failed, "
        f"{report.total_chunks} chunks"
    )
    return 0


async def _search(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain search <query>")
        return 1
    async with await _open(settings) as brain:
        results = await brain.search_files(" ".join(args))
    if not results:
        print("No matches.")
    for r in results:
        preview = r.chunk[:120].replace("\n", " ")
        print(f"{r.similarity:.3f}  {r.path} #{r.chunk_index}\n       {preview}")
    return 0


async def _evolve(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        result = brain.evolve()
    for line in result.adaptations:
        print(f"- {line}")
    return 0


async def _consolidate(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        result = brain.consolidate()
    print(f"{result.merged} merged, {result.pruned} pruned, {result.remaining} remaining")
    return 0


async def _summary(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        print(brain.summarize_recent().message)
    return 0


async def _digest(settings: Settings, args: list[str]) -> int:
    async with await _open(settings) as brain:
        print(brain.learning_digest().message)
    return 0


async def _learn(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain learn <query>")
        return 1
    async with await _open(settings) as brain:
        result = await brain.search_and_remember(" ".join(args))
    print(result.message)
    return 0 if result.success else 1


async def _goal(settings: Settings, args: list[str]) -> int:
    """goal | goal add <text> [priority] | goal update <id> <progress> [status]"""
    async with await _open(settings) as brain:
        if args and args[0] == "add" and len(args) > 1:
            try:
                priority = float(args[2]) if len(args) > 2 else 0.5
            except ValueError:
                print(f"Priority must be a number: {args[2]}")
                return 1
            print(brain.add_goal(args[1], priority).id)
            return 0
        if args and args[0] == "update" and len(args) > 2:
            try:
                progress = float(args[2])
            except ValueError:
                print(f"Progress must be a number: {args[2]}")
                return 1
            goal = brain.update_goal(args[1], progress, args[3] if len(args) > 3 else None)
            print(f"{goal.status.value} ({goal.progress:.0%})")
            return 0
        if args:
            print("Usage: superbrain goal [add <text> [priority] | update <id> <progress> [status]]")
            return 1

        goals = brain.get_goals()
        if not goals:
            print("No goals.")
        for goal in goals:
            print(f"{goal.id}  {goal.status.value:<9} {goal.progress:>4.0%}  {goal.description}")
    return 0


async def _believe(settings: Settings, args: list[str]) -> int:
    if not args:
        print("Usage: superbrain believe <text> [confidence]")
        return 1
    try:
        confidence = float(args[1]) if len(args) > 1 else 0.5
    except ValueError:
        print(f"Confidence must be a number: {args[1]}")
        return 1
    async with await _open(settings) as brain:
        print(brain.add_belief(args[0], confidence).id)
    return 0


async def _chat_loop(settings: Settings, args: list[str]) -> int:
    """Interactive session against the engine."""
    print("SuperBrain")
    print("Commands: /remember <text>, /status, /evolve, /exit")
    print("-" * 40)

    async with await _open(settings) as brain:
        await brain.start(watch=False)
        print("Ready.\n")
        try:
            while True:
                try:
                    user_input = (await asyncio.to_thread(input, "> ")).strip()
                except EOFError:
                    break

                if not user_input:
                    continue
                if user_input.lower() in ("/exit", "exit", "quit", "q"):
                    break
                if user_input == "/status":
                    status = brain.get_status()
                    print(f"Memories: {status.memory_count}, thoughts: {status.thought_count}, "
                          f"AI: {status.ai_provider} ({'up' if status.ai_available else 'down'})\n")
                    continue
                if user_input == "/evolve":
                    for line in brain.evolve().adaptations:
                        print(f"- {line}")
                    print()
                    continue
                if user_input.startswith("/remember "):
                    await brain.remember(user_input.removeprefix("/remember ").strip())
                    print("Stored.\n")
                    continue

                try:
                    thought = await brain.think(user_input)
                    print(f"\n{thought.response}")
                    print(f"  [{thought.strategy}, confidence {thought.confidence:.2f}]\n")
                except SuperBrainError as e:
                    print(f"Error: {e}\n")
        except KeyboardInterrupt:
            print("\n\nShutting down...")

    print("Goodbye!")
    return 0


async def _run_service(settings: Settings, args: list[str]) -> int:
    """Run watcher and cycle timer until interrupted."""
    logger = get_logger("cli.run")
    shutdown = asyncio.Event()

    def handle_shutdown_signal(signum: int, frame: object | None) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, initiating graceful shutdown")
        shutdown.set()

    signal.signal(signal.SIGINT, handle_shutdown_signal)
    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    async with await _open(settings) as brain:
        await brain.start()
        if brain.app_settings.indexed_folders:
            await brain.scan()
        print("SuperBrain running. Press Ctrl+C to stop.")
        while not shutdown.is_set():
            await asyncio.sleep(0.5)
        print("\nShutting down gracefully...")
    return 0


async def _health_check(settings: Settings, args: list[str]) -> int:
    """Check AI provider health."""
    from superbrain.ai.local import LocalProvider

    async with await _open(settings) as brain:
        router = brain.engine.ai
        if not router.is_configured:
            print("No AI provider configured (memory-only mode).")
            return 0
        ok = await router.refresh_availability()
        print(f"  {router.name}: {'OK' if ok else 'unreachable'}")
        if isinstance(router.active, LocalProvider) and ok:
            models = await router.active.list_models()
            if models:
                print(f"  models: {', '.join(models)}")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
