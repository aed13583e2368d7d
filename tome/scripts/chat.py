"""
Tome - Interactive Chat
========================
CLI entry point that wires the RAG pipeline and runs a REPL:

    1. Load settings (fail-fast on configuration errors).
    2. Build embedding / completion adapters (mock mode without a key).
    3. Open the session-local store and the vector index.
    4. Start as a guest, or sign straight in with ``--user-id``.
    5. Answer questions until ``/quit``.

Commands:
    /new                         start a new conversation
    /list                        list conversations for the current identity
    /open <id>                   make a conversation active
    /delete <id>                 delete a conversation
    /feedback <msg-id> <value>   helpful | not_helpful | clear
    /signin <user-id> [email]    sign in (migrates guest conversations)
    /signout                     back to guest mode
    /quit                        exit

Usage:
    python -m tome.scripts.chat
    python -m tome.scripts.chat --user-id alice --email alice@example.com
    python -m tome.scripts.chat --session-file /tmp/tome-session.json
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

# ── Ensure project root is importable when run directly ────────────────
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

if TYPE_CHECKING:
    from tome.src.core.conversations import ConversationService
    from tome.src.core.identity import IdentityReconciler
    from tome.src.core.models import Conversation
    from tome.src.core.personalization import PersonalizationEngine
    from tome.src.core.rag_engine import RAGManager


_FEEDBACK_VALUES = {"helpful", "not_helpful", "clear"}


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="chat", description="Tome — ask questions about the book.")
    parser.add_argument("--session-file", type=Path, default=None, help="Session-local store file (defaults to SESSION_STORE_PATH).")
    parser.add_argument("--user-id", default=None, help="Sign in as this user at startup.")
    parser.add_argument("--email", default=None, help="Email for --user-id.")
    return parser.parse_args(argv)


@dataclass
class Command:
    name: str
    args: list[str]


def parse_command(line: str) -> Command | None:
    """``/name arg …`` → ``Command``; plain text → ``None`` (it is a question)."""
    stripped = line.strip()
    if not stripped.startswith("/"):
        return None
    parts = stripped[1:].split()
    if not parts:
        return Command(name="", args=[])
    return Command(name=parts[0].lower(), args=parts[1:])


# ── Wiring ─────────────────────────────────────────────────────────────

@dataclass
class App:
    rag: RAGManager
    conversations: ConversationService
    personalization: PersonalizationEngine
    reconciler: IdentityReconciler


def build_app(session_file: Path | None = None) -> App:
    from tome.config.settings import settings
    from tome.src.core.conversations import ConversationService
    from tome.src.core.identity import IdentityReconciler
    from tome.src.core.personalization import PersonalizationEngine
    from tome.src.core.query_expansion import QueryExpander
    from tome.src.core.rag_engine import RAGManager
    from tome.src.core.retrieval import ContextAssembler
    from tome.src.database.session_store import GuestConversationRepository, JsonFileBackend, SessionStore
    from tome.src.database.vector_store import VectorIndex
    from tome.src.services.completion import create_completion_service
    from tome.src.services.embeddings import create_embedding_service

    embeddings = create_embedding_service()
    completion = create_completion_service()
    store = SessionStore(JsonFileBackend(session_file or settings.SESSION_STORE_PATH))
    guest = GuestConversationRepository(store)

    conversations = ConversationService(guest)
    reconciler = IdentityReconciler(conversations, guest)
    personalization = PersonalizationEngine(conversations)
    rag = RAGManager(QueryExpander(embeddings, completion), ContextAssembler(VectorIndex(), completion), completion, conversations, personalization)
    return App(rag=rag, conversations=conversations, personalization=personalization, reconciler=reconciler)


# ── REPL ───────────────────────────────────────────────────────────────

def _print_conversation(conversation: Conversation) -> None:
    for message in conversation.history[-2:]:
        label = "You" if message.role == "user" else "Tome"
        print(f"\n{label} [{message.id}]:\n{message.content}")
    print()


async def _handle_command(app: App, command: Command) -> bool:
    """Run *command*; returns ``False`` when the REPL should stop."""
    from tome.src.core.models import Feedback, Identity

    if command.name in {"quit", "exit"}:
        return False

    if command.name == "new":
        app.conversations.start_new_conversation()
        print("Started a new conversation.")
    elif command.name == "list":
        for conversation in await app.conversations.list_conversations():
            marker = "*" if conversation.id == app.conversations.active_id else " "
            print(f"{marker} {conversation.id}  {conversation.input[:60]}")
    elif command.name == "open" and command.args:
        conversation = await app.conversations.select_conversation(command.args[0])
        if conversation is None:
            print("No such conversation.")
        else:
            _print_conversation(conversation)
    elif command.name == "delete" and command.args:
        removed = await app.conversations.delete_conversation(command.args[0])
        print("Deleted." if removed else "No such conversation.")
    elif command.name == "feedback" and len(command.args) == 2 and command.args[1] in _FEEDBACK_VALUES:
        value = None if command.args[1] == "clear" else Feedback(command.args[1])
        matched = await app.personalization.record_feedback(command.args[0], value)
        print("Feedback saved." if matched else "No such message.")
    elif command.name == "signin" and command.args:
        identity = Identity(id=command.args[0], email=command.args[1] if len(command.args) > 1 else None)
        report = await app.reconciler.sign_in(identity)
        print(f"Signed in as {identity.id}. Migrated {len(report.migrated)} guest conversation(s).")
    elif command.name == "signout":
        app.reconciler.sign_out()
        print("Signed out.")
    else:
        print(__doc__.split("Commands:")[1].split("Usage:")[0].rstrip())
    return True


async def _repl(app: App) -> None:
    from tome.src.core.errors import CompletionError, TomeError

    print("Ask a question about the book (/quit to exit).")
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break

        command = parse_command(line)
        try:
            if command is not None:
                if not await _handle_command(app, command):
                    break
                continue
            if not line.strip():
                continue
            conversation = await app.rag.submit(line)
            _print_conversation(conversation)
        except CompletionError as exc:
            print(f"[error] {exc.user_message}")
        except TomeError as exc:
            print(f"[error] {exc}")


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    try:
        from tome.config.settings import settings  # noqa: F401
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        sys.exit(1)

    from tome.src.core.errors import MigrationPartialFailure
    from tome.src.core.models import Identity

    app = build_app(args.session_file)

    async def _run() -> None:
        if args.user_id:
            try:
                await app.reconciler.sign_in(Identity(id=args.user_id, email=args.email))
            except MigrationPartialFailure as exc:
                print(f"[warning] {exc}")
        await _repl(app)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    finally:
        app.reconciler.close()


if __name__ == "__main__":
    main()
