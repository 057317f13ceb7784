import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from pagechat.collaborators import StaticPageContentProvider, TabInfo
from pagechat.config import ChatConfig, ConfigError
from pagechat.errors import PageChatError
from pagechat.service import ChatService
from pagechat.storage import FileKeyValueStore


_NOISY_LOGGERS = ("httpx", "httpcore", "LiteLLM")
_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with the tab and session ids when a record carries them."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in ("tab_id", "page_load_id"):
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    level = logging.WARNING if quiet else logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
    logging.basicConfig(level=level, handlers=[handler], force=True)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def load_config(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig.from_file(args.config) if args.config else ChatConfig.from_env()
    config.validate()
    return config


def build_service(config: ChatConfig, page_text: str | None = None) -> ChatService:
    kv = FileKeyValueStore(config.store.data_dir)
    provider = StaticPageContentProvider(default=page_text) if page_text else None
    return ChatService(kv, config=config, page_content=provider)


def _format_ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def cmd_ask(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        return 1

    page_text = None
    if args.page_file:
        page_text = Path(args.page_file).read_text(encoding="utf-8")

    service = build_service(config, page_text)
    tab = TabInfo(tab_id=args.tab_id, url=args.url, title=args.title or "")
    try:
        if args.web_search:
            session = service.open_session(tab)
            service.sessions.update_session(session.page_load_id, {"isWebSearchEnabled": True})
        reply = service.send_message(tab, args.question)
    except PageChatError as e:
        logger.error(f"Request failed: {e}")
        print(f"Error: {e}")
        return 1
    finally:
        service.completion.close()

    print(reply.content)
    sources = (reply.metadata.sources if reply.metadata else None) or []
    if sources:
        print("\nSources:")
        for i, source in enumerate(sources, 1):
            print(f"  [{i}] {source.title or source.url} - {source.url}")
    return 1 if reply.is_error else 0


def cmd_sessions(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        return 1
    service = build_service(config)
    store = service.sessions

    if args.sessions_command == "list":
        summaries = store.list_sessions(args.domain)
        if not summaries:
            print("No sessions found.")
            return 0
        print(f"{'ID':<32} {'Domain':<28} {'Msgs':<6} {'Updated':<17} {'Last message'}")
        print("-" * 110)
        for s in summaries:
            print(
                f"{s.page_load_id:<32} {s.domain[:26]:<28} {s.message_count:<6} "
                f"{_format_ts(s.last_updated):<17} {s.last_message_preview}"
            )
        return 0

    if args.sessions_command == "show":
        session = store.load_session(args.page_load_id)
        if session is None:
            print(f"Session not found: {args.page_load_id}")
            return 1
        print(f"{session.title} ({session.url})")
        print(f"Created {_format_ts(session.created)}, updated {_format_ts(session.last_updated)}")
        for message in session.messages:
            marker = " [error]" if message.is_error else ""
            print(f"\n{message.role}{marker}:\n{message.content}")
        return 0

    if args.sessions_command == "delete":
        if store.get_session(args.page_load_id) is None:
            print(f"Session not found: {args.page_load_id}")
            return 1
        service.delete_session(args.page_load_id)
        print(f"Deleted {args.page_load_id}")
        return 0

    if args.sessions_command == "reconcile":
        result = store.reconcile_index()
        print(f"Index reconciled: {result['added']} added, {result['dropped']} dropped")
        return 0

    print("Usage: pagechat sessions {list,show,delete,reconcile}")
    return 1


def cmd_replay(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        return 1
    service = build_service(config)
    if args.mode:
        service.settings.update({"triggerMode": args.mode})

    replies = []
    try:
        outcome = service.check_trigger(
            args.tab_id,
            modifier_held=args.modifier,
            dispatch=lambda command: replies.append(service.replay(command, args.tab_id)),
        )
    except PageChatError as e:
        logger.error(f"Replay failed: {e}")
        print(f"Error: {e}")
        return 1
    finally:
        service.completion.close()

    if not outcome.executed:
        print(f"Not replayed ({outcome.reason})")
        return 0
    print(f"Replayed: {outcome.command.text}\n")
    for reply in replies:
        print(reply.content)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    setup_logging(args.verbose, args.quiet, args.log_format)
    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    c = config.completion
    print(f"Wire format:   {c.wire_format}")
    print(f"Endpoint:      {c.base_url}")
    print(f"Model:         {c.model}")
    print(f"API key:       {'set' if c.api_key else 'missing'}")
    print(f"Data dir:      {config.store.data_dir}")
    return 0 if c.api_key else 1


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="pagechat",
        description="PageChat - chat with a completion service about a web page",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    parser.add_argument(
        "--log-format",
        choices=["text", "json"],
        default="text",
        help="Log format (default: text)",
    )
    parser.add_argument("--config", metavar="PATH", help="YAML config file")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    ask_parser = subparsers.add_parser("ask", help="Ask a question about a page")
    ask_parser.add_argument("question", help="Question to ask")
    ask_parser.add_argument("--url", required=True, help="Page URL")
    ask_parser.add_argument("--title", help="Page title")
    ask_parser.add_argument("--tab-id", type=int, default=0, help="Tab id the session is bound to")
    ask_parser.add_argument("--page-file", help="File holding the page text")
    ask_parser.add_argument("--web-search", action="store_true", help="Enable web search")
    ask_parser.set_defaults(func=cmd_ask)

    sessions_parser = subparsers.add_parser("sessions", help="Manage stored conversations")
    sessions_sub = sessions_parser.add_subparsers(dest="sessions_command")
    list_parser = sessions_sub.add_parser("list", help="List conversations")
    list_parser.add_argument("--domain", help="Only sessions whose hostname contains this")
    show_parser = sessions_sub.add_parser("show", help="Print a conversation")
    show_parser.add_argument("page_load_id")
    delete_parser = sessions_sub.add_parser("delete", help="Delete a conversation")
    delete_parser.add_argument("page_load_id")
    sessions_sub.add_parser("reconcile", help="Repair the session index")
    sessions_parser.set_defaults(func=cmd_sessions)

    replay_parser = subparsers.add_parser("replay", help="Run the replay decision for a tab")
    replay_parser.add_argument("--tab-id", type=int, required=True)
    replay_parser.add_argument("--modifier", action="store_true", help="Modifier key held")
    replay_parser.add_argument("--mode", choices=["auto", "manual", "disabled"])
    replay_parser.set_defaults(func=cmd_replay)

    config_parser = subparsers.add_parser("config", help="Configuration")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("check", help="Validate configuration")
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
