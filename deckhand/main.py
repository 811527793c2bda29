"""Entry point and interactive loop for Deckhand."""

import asyncio
import signal
from pathlib import Path
from typing import Awaitable, TypeVar

import typer

from deckhand import __version__
from deckhand.agent import Agent, TurnResult
from deckhand.cli import TerminalUI, get_ui
from deckhand.config import Config, set_config
from deckhand.conversation import Conversation
from deckhand.exceptions import ConfigurationError, PersistenceError, SessionNotFoundError
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider, get_provider, set_provider
from deckhand.logging import bind_session, configure_logging, get_logger
from deckhand.modes import Mode, ModeController
from deckhand.session import Session
from deckhand.session.store import SessionStore
from deckhand.tools import build_registry

log = get_logger(__name__)

T = TypeVar("T")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_SESSION_NOT_FOUND = 2

app = typer.Typer(help="Deckhand - a permission-gated terminal coding agent", add_completion=False)


def load_config(
    config: str = "",
    model: str = "",
    base_url: str = "",
    api_key: str = "",
    verbose: bool = False,
) -> Config:
    """Load configuration, apply CLI overrides and configure logging.

    Raises:
        ConfigurationError: The config file is missing, malformed or invalid
    """
    cfg = Config.load(Path(config) if config else None)
    if model:
        cfg.model.model = model
    if base_url:
        cfg.model.base_url = base_url
    if api_key:
        cfg.model.api_key = api_key
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()
    return cfg


def new_session(cfg: Config) -> Session:
    return Session(
        mode=Mode(cfg.agent.default_mode),
        cwd=str(Path.cwd().resolve()),
        model=cfg.model.model,
    )


async def _race_shutdown(work: Awaitable[T], shutdown: asyncio.Event) -> T | None:
    """Await *work* unless shutdown is requested first."""
    work_task = asyncio.ensure_future(work)
    stop_task = asyncio.create_task(shutdown.wait())
    try:
        done, _ = await asyncio.wait({work_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
    if work_task in done:
        return work_task.result()
    work_task.cancel()
    try:
        await work_task
    except asyncio.CancelledError:
        pass
    return None


async def run_turn(agent: Agent, ui: TerminalUI, text: str, shutdown: asyncio.Event) -> TurnResult:
    """Run one turn; a shutdown request cancels it."""
    turn_task = asyncio.create_task(agent.run_turn(text))
    stop_task = asyncio.create_task(shutdown.wait())
    try:
        done, _ = await asyncio.wait({turn_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if turn_task not in done:
            agent.cancel()
        result = await turn_task
    finally:
        stop_task.cancel()
    ui.end_stream()

    if result.status == "cancelled":
        ui.print_warning("Turn cancelled.")
    elif result.status == "failed":
        ui.print_error(result.error or "Model request failed")
    elif result.status == "max_iterations":
        ui.print_warning(result.error or "Iteration limit reached")
    return result


async def flush_session(agent: Agent, timeout: float) -> bool:
    """Save the session within *timeout* seconds.

    A timed-out save leaves the previously written file intact.
    """
    try:
        await asyncio.wait_for(agent.save(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Session flush timed out", timeout=timeout)
        return False
    except PersistenceError as e:
        log.warning("Session flush failed", error=str(e))
        return False
    return True


def _install_signal_handlers(agent: Agent, shutdown: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()

    def _on_interrupt() -> None:
        if not agent.cancel():
            shutdown.set()

    def _on_terminate() -> None:
        agent.cancel()
        shutdown.set()

    installed: list[signal.Signals] = []
    handlers = [(signal.SIGINT, _on_interrupt), (signal.SIGTERM, _on_terminate)]
    if hasattr(signal, "SIGHUP"):
        handlers.append((signal.SIGHUP, _on_terminate))
    for sig, handler in handlers:
        try:
            loop.add_signal_handler(sig, handler)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, OSError):
            # add_signal_handler is unavailable on some platforms
            continue
    return installed


async def _open_session(
    cfg: Config,
    store: SessionStore,
    resume: str,
    continue_last: bool,
) -> tuple[Session, bool]:
    if resume:
        return await store.load(resume), True
    if continue_last:
        latest = await store.latest()
        if latest is not None:
            return latest, True
    return new_session(cfg), False


def build_agent(
    cfg: Config,
    session: Session,
    store: SessionStore,
    provider: LLMProvider,
    ui: TerminalUI,
    mode: str = "",
    interactive: bool = True,
) -> Agent:
    """Wire a session, provider and tools into an agent.

    Without *interactive* nobody answers approvals or questions, so Ask
    outcomes are denied.
    """
    instructions = InstructionLoader()
    return Agent(
        Conversation(session, provider, instructions, cfg.context),
        ModeController(cfg, initial=mode or session.mode),
        build_registry(cfg, base_path=Path.cwd()),
        store=store,
        config=cfg,
        instructions=instructions,
        approval_callback=ui.approve if interactive else None,
        question_callback=ui.ask_questions if interactive else None,
        text_callback=ui.print_streaming,
        tool_output_callback=ui.print_tool_result,
        status_callback=ui.set_runtime_status,
    )


async def _close_agent(agent: Agent, cfg: Config, installed: list[signal.Signals]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)
    agent.cancel()
    if await flush_session(agent, cfg.shutdown.flush_timeout):
        log.info("Session flushed", session_id=agent.conversation.session.id)
    await agent.tools.close()
    await agent.provider.close()


async def run_headless(
    cfg: Config,
    message: str,
    resume: str = "",
    continue_last: bool = False,
    mode: str = "",
    provider: LLMProvider | None = None,
    ui: TerminalUI | None = None,
) -> int:
    """Run a single turn without prompting and return the process exit code."""
    ui = ui or get_ui()
    if not message.strip():
        ui.print_error("--headless requires a message")
        return EXIT_FATAL
    store = SessionStore(cfg.session.path)

    try:
        session, _ = await _open_session(cfg, store, resume, continue_last)
    except SessionNotFoundError as e:
        ui.print_error(str(e))
        return EXIT_SESSION_NOT_FOUND
    except PersistenceError as e:
        ui.print_error(str(e))
        return EXIT_FATAL

    if provider is not None:
        set_provider(provider)
    agent = build_agent(cfg, session, store, get_provider(), ui, mode, interactive=False)
    shutdown = asyncio.Event()
    installed = _install_signal_handlers(agent, shutdown)
    bind_session(session.id)
    log.info("Headless turn started", session_id=session.id, mode=agent.modes.mode.value)

    try:
        result = await run_turn(agent, ui, message, shutdown)
    finally:
        await _close_agent(agent, cfg, installed)

    return EXIT_OK if result.status == "completed" else EXIT_FATAL


async def run_interactive(
    cfg: Config,
    resume: str = "",
    continue_last: bool = False,
    mode: str = "",
    provider: LLMProvider | None = None,
    ui: TerminalUI | None = None,
    message: str = "",
) -> int:
    """Run the interactive agent loop and return the process exit code.

    A non-empty *message* is sent as the first turn.
    """
    ui = ui or get_ui()
    store = SessionStore(cfg.session.path)

    try:
        session, resumed = await _open_session(cfg, store, resume, continue_last)
    except SessionNotFoundError as e:
        ui.print_error(str(e))
        return EXIT_SESSION_NOT_FOUND
    except PersistenceError as e:
        ui.print_error(str(e))
        return EXIT_FATAL

    if provider is not None:
        set_provider(provider)
    provider = get_provider()
    agent = build_agent(cfg, session, store, provider, ui, mode)
    modes = agent.modes
    instructions = agent.instructions

    shutdown = asyncio.Event()
    installed = _install_signal_handlers(agent, shutdown)
    bind_session(session.id)
    ui.print_welcome(session.id, modes.mode.value, resumed=resumed)
    log.info("Session opened", session_id=session.id, resumed=resumed, mode=modes.mode.value)

    exit_code = EXIT_OK
    pending = [message] if message.strip() else []
    try:
        while not shutdown.is_set():
            if pending:
                line = pending.pop()
            else:
                try:
                    line = await _race_shutdown(ui.read_line(f"{modes.mode.value}> "), shutdown)
                except EOFError:
                    break
                if line is None:
                    break

            parsed = ui.handle_special_command(line)
            if parsed is None:
                continue
            action, argument = parsed

            if action == "MESSAGE":
                if not argument:
                    continue
                result = await run_turn(agent, ui, argument, shutdown)
                if result.fatal:
                    exit_code = EXIT_FATAL
                    break
            elif action == "EXIT":
                break
            elif action == "MODE":
                try:
                    new_mode = modes.set_mode(argument) if argument else modes.cycle()
                except ValueError:
                    ui.print_error(f"Unknown mode: {argument}")
                    continue
                agent.conversation.set_mode(modes.persistent_mode)
                ui.print_info(f"Mode: {new_mode.value}")
            elif action == "YOLO":
                new_mode = modes.toggle_yolo()
                agent.conversation.set_mode(modes.persistent_mode)
                ui.print_info(f"Mode: {new_mode.value}")
            elif action == "COMPACT":
                outcome = await _race_shutdown(agent.compact(force=True), shutdown)
                if outcome is None:
                    break
                if outcome.compacted:
                    ui.print_info(
                        f"Compacted {outcome.compacted_turns} turns "
                        f"(~{outcome.before_tokens} -> ~{outcome.after_tokens} tokens)."
                    )
                else:
                    ui.print_info(f"Nothing compacted ({outcome.reason}).")
                await agent.checkpoint()
            elif action == "SESSIONS":
                ui.print_sessions(await store.list_sessions(limit=20))
            elif action == "SAVE":
                try:
                    await agent.save()
                    ui.print_info(f"Saved session {agent.conversation.session.id}.")
                except PersistenceError as e:
                    ui.print_error(str(e))
            elif action in ("RESUME", "NEW"):
                await flush_session(agent, cfg.shutdown.flush_timeout)
                try:
                    target = await store.load(argument) if action == "RESUME" else new_session(cfg)
                except (SessionNotFoundError, PersistenceError) as e:
                    ui.print_error(str(e))
                    continue
                agent.conversation = Conversation(target, provider, instructions, cfg.context)
                modes.set_mode(target.mode)
                bind_session(target.id)
                ui.print_welcome(target.id, modes.mode.value, resumed=action == "RESUME")
    finally:
        await _close_agent(agent, cfg, installed)

    return exit_code


@app.command()
def run(
    message: str = typer.Argument("", help="Initial message; sent as the first turn"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    base_url: str = typer.Option("", "--base-url", help="Override API base URL"),
    api_key: str = typer.Option("", "--api-key", help="Override API key"),
    resume: str = typer.Option("", "-r", "--resume", help="Resume a saved session by id"),
    continue_last: bool = typer.Option(False, "--continue", help="Resume the most recent session"),
    mode: str = typer.Option("", "--mode", help="Start in normal, plan or apply mode"),
    headless: bool = typer.Option(False, "--headless", help="Run one turn without prompting; requires a message"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive session, or run a single headless turn."""
    ui = get_ui()
    try:
        cfg = load_config(config, model, base_url, api_key, verbose)
    except ConfigurationError as e:
        ui.print_error(str(e))
        raise typer.Exit(EXIT_FATAL)

    if mode and mode not in ("normal", "plan", "apply"):
        ui.print_error(f"Unknown mode: {mode}")
        raise typer.Exit(EXIT_FATAL)

    if headless and not message.strip():
        ui.print_error("--headless requires a message argument")
        raise typer.Exit(EXIT_FATAL)

    if headless:
        work = run_headless(cfg, message, resume, continue_last, mode)
    else:
        work = run_interactive(cfg, resume, continue_last, mode, message=message)
    try:
        exit_code = asyncio.run(work)
    except KeyboardInterrupt:
        exit_code = EXIT_OK
    raise typer.Exit(exit_code)


@app.command()
def sessions(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    limit: int = typer.Option(20, "-n", "--limit", help="Number of sessions to show"),
) -> None:
    """List saved sessions, newest first."""
    ui = get_ui()
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        ui.print_error(str(e))
        raise typer.Exit(EXIT_FATAL)
    ui.print_sessions(asyncio.run(SessionStore(cfg.session.path).list_sessions(limit=limit)))


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"Deckhand v{__version__}")


if __name__ == "__main__":
    app()
