import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Awaitable, Callable

from dotenv import load_dotenv

load_dotenv()

from common.events import Event, GenerationDeltaEvent, NoticeEvent
from common.jsonio import DocumentError
from wordsmith.client import WritingClient
from wordsmith.config import ConfigError, WritingConfig
from wordsmith.errors import ServerError, ValidationError
from wordsmith.plan import FILL_PLACEHOLDER, PREDICT_PLACEHOLDER
from wordsmith.workspace import WritingWorkspace

WorkspaceAction = Callable[[WritingWorkspace], Awaitable[int]]


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    if log_format == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=[handler])
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("LiteLLM").setLevel(logging.WARNING)


def print_event(event: Event) -> None:
    if isinstance(event, GenerationDeltaEvent):
        print(event.text, end="", flush=True)
    elif isinstance(event, NoticeEvent):
        print(f"[{event.level}] {event.message}", file=sys.stderr)


def load_config() -> WritingConfig:
    config = WritingConfig.from_env()
    config.validate()
    return config


def run_with_workspace(args: argparse.Namespace, action: WorkspaceAction) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        print("Make sure WRITING_SERVER_URL is set.")
        return 1

    async def _run() -> int:
        async with WritingClient.from_config(config) as client:
            workspace = WritingWorkspace.from_config(config, client, on_event=print_event)
            try:
                await workspace.refresh_capabilities()
                if workspace.unsupported:
                    print("Error: the server does not support writing sessions.")
                    return 1
                return await action(workspace)
            finally:
                await workspace.aclose()

    try:
        return asyncio.run(_run())
    except (ServerError, ValidationError, DocumentError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        print(f"Error: {e}")
        return 1


def cmd_sessions(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        await workspace.load_sessions()
        sessions = workspace.sorted_sessions()
        if not sessions:
            print("No sessions found.")
            return 0
        print(f"{'ID':<38} {'Name':<40} {'Version':<8} {'Modified'}")
        print("-" * 100)
        for item in sessions:
            print(
                f"{item.id:<38} {item.name[:38]:<40} {item.version:<8} {(item.last_modified or '')[:19]}"
            )
        return 0

    return run_with_workspace(args, action)


def cmd_new(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        session = await workspace.create_session(args.name)
        print(session.id)
        return 0

    return run_with_workspace(args, action)


def cmd_rename(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        await workspace.load_sessions()
        session = await workspace.rename_session(args.session_id, args.name)
        return 0 if session is not None else 1

    return run_with_workspace(args, action)


def cmd_delete(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        await workspace.load_sessions()
        return 0 if await workspace.delete_session(args.session_id) else 1

    return run_with_workspace(args, action)


def cmd_clone(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        session = await workspace.clone_session(args.session_id, args.name)
        print(session.id)
        return 0

    return run_with_workspace(args, action)


def cmd_templates(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        templates = await workspace.load_templates()
        if not templates:
            print("No templates found.")
        for template in templates:
            marker = "*" if template.is_default else " "
            print(f"{marker} {template.name} (v{template.version})")
        return 0

    return run_with_workspace(args, action)


def cmd_themes(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        themes = await workspace.load_themes()
        if not themes:
            print("No themes found.")
        for theme in themes:
            marker = "*" if theme.is_default else " "
            print(f"{marker} {theme.name} (order {theme.order})")
        return 0

    return run_with_workspace(args, action)


def cmd_generate(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        if args.model:
            workspace.model = args.model
        await workspace.load_sessions()
        if workspace.supports("templates"):
            await workspace.load_templates()
        if await workspace.open_session(args.session_id) is None:
            return 1
        if args.append:
            workspace.set_prompt(workspace.text + args.append)
        if args.placeholder:
            marker = PREDICT_PLACEHOLDER if args.placeholder == "predict" else FILL_PLACEHOLDER
            workspace.insert_placeholder(marker)
        if args.chat is not None:
            workspace.set_chat_mode(args.chat)
        if args.temperature is not None:
            workspace.update_settings(temperature=args.temperature)
        if args.max_tokens is not None:
            workspace.update_settings(max_tokens=args.max_tokens)

        result = await workspace.generate()
        print()
        if result is None:
            return 1
        await workspace.flush()
        return 0 if result.error is None else 1

    return run_with_workspace(args, action)


def cmd_search(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        await workspace.load_sessions()
        if await workspace.open_session(args.session_id) is None:
            return 1
        result = workspace.find(args.query, match_case=args.match_case, use_regex=args.regex)
        if result.error:
            print(f"Error: {result.error}")
            return 1
        print(f"{len(result.matches)} match(es)")
        for match in result.matches:
            snippet = workspace.text[match.start : match.end].replace("\n", "\\n")
            print(f"  {match.start}-{match.end}: {snippet}")
        if args.replace is not None and result.matches:
            workspace.replace_all(args.replace)
            await workspace.flush()
            print(f"Replaced {len(result.matches)} match(es)")
        return 0

    return run_with_workspace(args, action)


def cmd_export(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        if args.kind == "session":
            path = await workspace.export_session(args.name, args.output or f"{args.name}.json")
        elif args.kind == "template":
            await workspace.load_templates()
            path = workspace.export_template(args.name, args.output or f"{args.name}.json")
        else:
            await workspace.load_themes()
            path = workspace.export_theme(args.name, args.output or f"{args.name}.json")
        print(f"Exported to {path}")
        return 0

    return run_with_workspace(args, action)


def cmd_import(args: argparse.Namespace) -> int:
    async def action(workspace: WritingWorkspace) -> int:
        if args.kind == "sessions":
            await workspace.load_sessions()
            imported = await workspace.import_sessions(args.path)
        elif args.kind == "templates":
            await workspace.load_templates()
            imported = await workspace.import_templates(args.path)
        else:
            await workspace.load_themes()
            imported = await workspace.import_themes(args.path)
        for record in imported:
            print(record.name)
        return 0

    return run_with_workspace(args, action)


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="wordsmith",
        description="Wordsmith - writing sessions with streaming completion",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Minimal logging (warnings/errors only)"
    )
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    sessions_parser = subparsers.add_parser("sessions", help="List sessions, most recently used first")
    sessions_parser.set_defaults(func=cmd_sessions)

    new_parser = subparsers.add_parser("new", help="Create a session")
    new_parser.add_argument("name", help="Session name")
    new_parser.set_defaults(func=cmd_new)

    rename_parser = subparsers.add_parser("rename", help="Rename a session")
    rename_parser.add_argument("session_id", help="Session ID")
    rename_parser.add_argument("name", help="New name")
    rename_parser.set_defaults(func=cmd_rename)

    delete_parser = subparsers.add_parser("delete", help="Delete a session")
    delete_parser.add_argument("session_id", help="Session ID")
    delete_parser.set_defaults(func=cmd_delete)

    clone_parser = subparsers.add_parser("clone", help="Clone a session")
    clone_parser.add_argument("session_id", help="Session ID")
    clone_parser.add_argument("--name", help="Name for the clone")
    clone_parser.set_defaults(func=cmd_clone)

    templates_parser = subparsers.add_parser("templates", help="List templates")
    templates_parser.set_defaults(func=cmd_templates)

    themes_parser = subparsers.add_parser("themes", help="List themes")
    themes_parser.set_defaults(func=cmd_themes)

    generate_parser = subparsers.add_parser("generate", help="Generate text into a session")
    generate_parser.add_argument("session_id", help="Session ID")
    generate_parser.add_argument("--append", help="Text to append before generating")
    generate_parser.add_argument(
        "--placeholder",
        choices=["predict", "fill"],
        help="Insert a placeholder at the end of the prompt first",
    )
    generate_parser.add_argument("--model", help="Model override (default: WRITING_MODEL)")
    generate_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    generate_parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    chat_group = generate_parser.add_mutually_exclusive_group()
    chat_group.add_argument("--chat", dest="chat", action="store_true", default=None, help="Enable chat mode")
    chat_group.add_argument("--no-chat", dest="chat", action="store_false", help="Disable chat mode")
    generate_parser.set_defaults(func=cmd_generate)

    search_parser = subparsers.add_parser("search", help="Search (and optionally replace) in a session")
    search_parser.add_argument("session_id", help="Session ID")
    search_parser.add_argument("query", help="Search text or pattern")
    search_parser.add_argument("--replace", help="Replace every match with this text")
    search_parser.add_argument("--regex", action="store_true", help="Treat query as a regular expression")
    search_parser.add_argument("--match-case", action="store_true", help="Case-sensitive search")
    search_parser.set_defaults(func=cmd_search)

    export_parser = subparsers.add_parser("export", help="Export a session, template or theme")
    export_parser.add_argument("kind", choices=["session", "template", "theme"])
    export_parser.add_argument("name", help="Session ID, template name or theme name")
    export_parser.add_argument("--output", "-o", help="Output file (default: <name>.json)")
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import sessions, templates or themes")
    import_parser.add_argument("kind", choices=["sessions", "templates", "themes"])
    import_parser.add_argument("path", help="JSON or YAML file")
    import_parser.set_defaults(func=cmd_import)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
