"""CLI entrypoint for lai, the terminal companion of the desktop assistant."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata
import json
from pathlib import Path
import sys
import threading
from typing import Any

from pydantic import ValidationError

from .application import LaiApplication
from .audit import DEFAULT_TAIL_LINES, AuditLog
from .client import ControlClient
from .code_runner import SUPPORTED_LANGUAGES, run_code
from .config import IpcConfig, load_config
from .dispatcher import dev_mode_from_env
from .events import ASK_EVENT, NOTIFY_EVENT, Event
from .exceptions import LaiControlError
from .logging_utils import configure_logging
from .runner import ExecutionResult, ProcessRunner

EPILOG = """\
Examples:
  lai ask "How do I optimize this SQL query?"
  lai notify "Build completed successfully"
  lai last
  lai capture "npm test" --analyze
  lai capture "make build" --timeout 60 --ai-analyze
  DEV_MODE=1 lai create "Test assistant message"
"""

AI_ANALYSIS_DELAY_SECONDS = 1.0

AI_ANALYSIS_PROMPT = (
    "Analyze this terminal command execution:\n\n"
    "Command: {command}\n"
    "Exit Code: {exit_code}\n"
    "Execution Time: {execution_time_ms}ms\n\n"
    "STDOUT:\n{stdout}\n\n"
    "STDERR:\n{stderr}\n\n"
    "Provide:\n"
    "1. What the command was trying to do\n"
    "2. Whether it succeeded or failed\n"
    "3. If failed, what went wrong\n"
    "4. Suggestions for fixes or improvements\n"
    "5. Any security or performance considerations"
)


def _version() -> str:
    try:
        return metadata.version("lai-control")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def _add_ask_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("message", nargs="?", help="The question or prompt to send")
    parser.add_argument("--model", help="Override the default model")
    parser.add_argument("--provider", help="Override the default provider")
    parser.add_argument(
        "--new", action="store_true", help="Start a new conversation"
    )
    parser.add_argument(
        "--gui", action="store_true", help="Show the response in the GUI instead"
    )
    parser.add_argument(
        "--stdin", action="store_true", help="Read the message from stdin"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lai",
        description="Terminal companion for the desktop AI assistant",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", action="version", version=f"lai {_version()}"
    )
    parser.add_argument("--config", help="Path to an alternate config.toml")
    parser.add_argument("--host", help="Control plane host (loopback only)")
    parser.add_argument("--port", type=int, help="Control plane port")

    commands = parser.add_subparsers(dest="command", required=True)

    ask = commands.add_parser("ask", help="Send a question to the assistant")
    _add_ask_arguments(ask)
    chat = commands.add_parser("chat", help="Alias for 'ask'")
    _add_ask_arguments(chat)

    analyze = commands.add_parser(
        "analyze", help="Analyze text from stdin (cat error.log | lai analyze)"
    )
    analyze.add_argument("prompt", nargs="?", help="Prompt placed before the input")
    analyze.add_argument("--model", help="Override the default model")
    analyze.add_argument("--provider", help="Override the default provider")
    analyze.add_argument("--gui", action="store_true", help="Show the response in the GUI")

    notify = commands.add_parser("notify", help="Show a desktop notification")
    notify.add_argument("message", help="Notification text")

    commands.add_parser("last", help="Print the most recent assistant response")

    create = commands.add_parser(
        "create", help="Insert a test assistant message (DEV_MODE only)"
    )
    create.add_argument("message", help="Assistant message content")
    create.add_argument("--conversation-id", help="Existing conversation to insert into")

    capture = commands.add_parser("capture", help="Run a command and report its output")
    capture.add_argument("cmd", metavar="command", help="Command line to execute")
    capture.add_argument("--cwd", help="Working directory for the command")
    capture.add_argument(
        "--timeout", type=float, default=None, help="Timeout in seconds (default: 30)"
    )
    capture.add_argument(
        "--analyze", action="store_true", help="Include the failure analysis"
    )
    capture.add_argument(
        "--ai-analyze", action="store_true", help="Also ask the assistant to analyze it"
    )
    capture.add_argument("--json", action="store_true", help="Print the raw result as JSON")

    run = commands.add_parser("run", help="Run a code snippet with an interpreter")
    run.add_argument("language", choices=SUPPORTED_LANGUAGES)
    run.add_argument("file", nargs="?", help="Source file (default: stdin)")
    run.add_argument("--cwd", help="Working directory for the interpreter")
    run.add_argument("--timeout-ms", type=int, default=None, help="Timeout in milliseconds")
    run.add_argument("--json", action="store_true", help="Print the raw result as JSON")

    audit = commands.add_parser("audit", help="Inspect the execution audit log")
    audit_commands = audit.add_subparsers(dest="audit_command", required=True)
    tail = audit_commands.add_parser("tail", help="Print the last lines of the log")
    tail.add_argument("-n", "--lines", type=int, default=DEFAULT_TAIL_LINES)
    audit_commands.add_parser("rotate", help="Move the log to its backup slot")

    serve = commands.add_parser("serve", help="Run the control plane without the GUI")
    serve.add_argument(
        "--dev-mode", action="store_true", help="Enable the create command"
    )
    return parser


def _fail(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def _read_stdin() -> str:
    # Piped logs are often not UTF-8; undecodable bytes become U+FFFD.
    buffer = getattr(sys.stdin, "buffer", None)
    if buffer is None:
        return sys.stdin.read()
    return buffer.read().decode("utf-8", errors="replace")


def _client(config: dict[str, dict[str, Any]]) -> ControlClient:
    ipc = config["ipc"]
    return ControlClient(
        host=str(ipc["host"]),
        port=int(ipc["port"]),
        timeout=float(ipc["client_timeout_seconds"]),
        max_message_bytes=int(ipc["max_message_bytes"]),
    )


def _audit_log(config: dict[str, dict[str, Any]]) -> AuditLog:
    audit = config["audit"]
    return AuditLog(
        audit["path"],
        max_bytes=int(audit["max_bytes"]),
        truncate_chars=int(audit["truncate_chars"]),
    )


def _send_ask(
    client: ControlClient,
    message: str,
    model: str | None,
    provider: str | None,
    new: bool,
    gui: bool,
    delay: float,
) -> int:
    payload = {
        "prompt": message,
        "model": model,
        "provider": provider,
        "new": new,
        "gui": gui,
    }
    if gui:
        try:
            client.ask(payload)
        except LaiControlError as exc:
            return _fail(f"Failed to send ask: {exc}")
        print("Request sent. Check the GUI for the response.")
        return 0

    print("Processing...", file=sys.stderr)
    try:
        result = client.ask_and_poll(payload, delay)
    except LaiControlError as exc:
        return _fail(f"Failed to get response: {exc}")
    if result.message is None:
        return _fail("Failed to get response: no assistant message available")
    if not result.fresh:
        print(
            "The assistant has not answered yet; showing the previous response. "
            "Run 'lai last' again shortly.",
            file=sys.stderr,
        )
    print(f"\n{result.message.get('content', '')}")
    return 0


def _cmd_ask(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    if args.stdin or args.message is None:
        try:
            message = _read_stdin().strip()
        except OSError as exc:
            return _fail(f"Failed to read from stdin: {exc}")
    else:
        message = args.message
    if not message:
        return _fail(
            "No message provided. Use --stdin to read from stdin, "
            "or provide a message argument."
        )
    return _send_ask(
        _client(config),
        message,
        args.model,
        args.provider,
        args.new,
        args.gui,
        config["client"]["poll_delay_ms"] / 1000,
    )


def _cmd_analyze(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    try:
        content = _read_stdin().strip()
    except OSError as exc:
        return _fail(f"Failed to read from stdin: {exc}")
    if not content:
        return _fail("No input from stdin. Usage: cat file.txt | lai analyze")
    if args.prompt:
        message = f"{args.prompt}\n\n{content}"
    else:
        message = f"Analyze the following:\n\n{content}"
    return _send_ask(
        _client(config),
        message,
        args.model,
        args.provider,
        False,
        args.gui,
        config["client"]["poll_delay_ms"] / 1000,
    )


def _cmd_notify(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    try:
        _client(config).notify(args.message)
    except LaiControlError as exc:
        return _fail(f"Failed to send notify: {exc}")
    return 0


def _cmd_last(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    try:
        message = _client(config).last_message()
    except LaiControlError as exc:
        return _fail(f"Failed to get last response: {exc}")
    print(message.get("content", ""))
    return 0


def _cmd_create(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    if not dev_mode_from_env():
        return _fail("The create command is only available with DEV_MODE=1")
    try:
        message = _client(config).create(args.message, args.conversation_id)
    except LaiControlError as exc:
        return _fail(f"Failed to send create: {exc}")
    print(message.get("content", ""))
    return 0


def format_capture_report(result: ExecutionResult) -> str:
    lines = [
        f"Command: {result.command}",
        f"Working Directory: {result.working_dir}",
        f"Execution Time: {result.execution_time_ms}ms",
    ]
    if result.timed_out:
        lines.append("Status: TIMED OUT")
    elif result.exit_code is not None:
        lines.append(f"Exit Code: {result.exit_code}")
    if result.stdout:
        lines.extend(["", "--- STDOUT ---", result.stdout])
    if result.stderr:
        lines.extend(["", "--- STDERR ---", result.stderr])
    if result.error_summary:
        lines.extend(["", "--- ANALYSIS ---", result.error_summary])
    return "\n".join(lines)


def format_analysis_prompt(result: ExecutionResult) -> str:
    return AI_ANALYSIS_PROMPT.format(
        command=result.command,
        exit_code=result.exit_code,
        execution_time_ms=result.execution_time_ms,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def _print_ai_analysis(client: ControlClient, result: ExecutionResult) -> None:
    # Best effort: the capture itself already succeeded.
    print("\n--- AI ANALYSIS ---")
    payload = {"prompt": format_analysis_prompt(result), "new": False}
    try:
        poll = client.ask_and_poll(payload, AI_ANALYSIS_DELAY_SECONDS)
    except LaiControlError as exc:
        print(f"Failed to request AI analysis: {exc}")
        return
    if poll.message is None:
        print("Failed to get AI analysis")
        return
    print(poll.message.get("content", ""))


def _cmd_capture(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    runner = ProcessRunner(
        poll_interval=config["runner"]["poll_interval_ms"] / 1000,
        audit_log=_audit_log(config),
    )
    timeout = (
        args.timeout
        if args.timeout is not None
        else float(config["runner"]["default_timeout_seconds"])
    )
    try:
        result = runner.run(args.cmd, cwd=args.cwd, timeout=timeout)
    except LaiControlError as exc:
        return _fail(f"Failed to execute command: {exc}")

    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return 0
    print(format_capture_report(result))
    if args.ai_analyze:
        _print_ai_analysis(_client(config), result)
    return 0


def _cmd_run(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    try:
        if args.file:
            code = Path(args.file).read_text(encoding="utf-8")
        else:
            code = _read_stdin()
    except (OSError, UnicodeDecodeError) as exc:
        return _fail(f"Failed to read code: {exc}")
    runner = ProcessRunner(
        poll_interval=config["runner"]["poll_interval_ms"] / 1000,
        audit_log=_audit_log(config),
    )
    timeout_ms = (
        args.timeout_ms
        if args.timeout_ms is not None
        else int(config["runner"]["code_timeout_ms"])
    )
    try:
        result = run_code(args.language, code, runner, timeout_ms=timeout_ms, cwd=args.cwd)
    except LaiControlError as exc:
        return _fail(f"Failed to run code: {exc}")
    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        print(format_capture_report(result))
    return 0


def _cmd_audit(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    audit_log = _audit_log(config)
    if args.audit_command == "rotate":
        if not audit_log.rotate():
            return _fail(f"Failed to rotate audit log at {audit_log.path}")
        print(f"Rotated {audit_log.path} to {audit_log.backup_path}")
        return 0
    try:
        content = audit_log.tail(args.lines)
    except LaiControlError as exc:
        return _fail(str(exc))
    if content:
        print(content)
    return 0


def _print_event(event: Event) -> None:
    if event.name == NOTIFY_EVENT:
        print(f"[notify] {event.data.get('message', '')}", flush=True)
        return
    prompt = event.data.get("prompt")
    if not isinstance(prompt, str):
        prompt = json.dumps(event.data.get("payload", event.data), ensure_ascii=False)
    print(f"[ask] {prompt}", flush=True)


def _wait_for_interrupt() -> None:
    threading.Event().wait()


def _cmd_serve(args: argparse.Namespace, config: dict[str, dict[str, Any]]) -> int:
    app = LaiApplication(config, dev_mode=True if args.dev_mode else None)
    app.events.subscribe(NOTIFY_EVENT, _print_event)
    app.events.subscribe(ASK_EVENT, _print_event)
    if not app.start():
        app.stop()
        return _fail(
            f"Failed to start control plane on "
            f"{config['ipc']['host']}:{config['ipc']['port']}"
        )
    host, port = app.control_plane.address or (config["ipc"]["host"], config["ipc"]["port"])
    print(f"Listening on {host}:{port}", flush=True)
    try:
        _wait_for_interrupt()
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()
    return 0


_COMMANDS = {
    "ask": _cmd_ask,
    "chat": _cmd_ask,
    "analyze": _cmd_analyze,
    "notify": _cmd_notify,
    "last": _cmd_last,
    "create": _cmd_create,
    "capture": _cmd_capture,
    "run": _cmd_run,
    "audit": _cmd_audit,
    "serve": _cmd_serve,
}


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, load configuration, and run one subcommand."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    config = load_config(Path(args.config).expanduser() if args.config else None)
    configure_logging(config["logging"])

    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if overrides:
        try:
            config["ipc"] = IpcConfig.model_validate(
                {**config["ipc"], **overrides}
            ).model_dump()
        except ValidationError as exc:
            return _fail(f"Invalid connection settings: {exc.errors()[0]['msg']}")
    return _COMMANDS[args.command](args, config)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
