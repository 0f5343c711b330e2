from __future__ import annotations

import argparse
import asyncio
from collections.abc import Iterable, Sequence
import sys
from typing import TextIO

from agent_chat.core.errors import ConfigurationError, SessionError
from agent_chat.core.logging import configure_logging
from agent_chat.core.settings import Settings, get_settings
from agent_chat.dependency_injection.container import build_container, build_session
from agent_chat.schemas.messages import Message
from agent_chat.services.contracts import AgentTransportProtocol, MessageStoreProtocol
from agent_chat.services.session_controller import SessionController

_HELP = "Commands: /new, /switch <id>, /delete <id>, /rename <title>, /retry, /exit"


class TokenPrinter:
    """Writes only the not-yet-printed tail of each agent message."""

    def __init__(self, output: TextIO = sys.stdout) -> None:
        self._output = output
        self._printed: dict[str, int] = {}

    def __call__(self, message: Message) -> None:
        if message.role == "human":
            return
        printed = self._printed.get(message.id)
        if printed is None:
            self._output.write("Agent: ")
            printed = 0
        self._output.write(message.content[printed:])
        self._output.flush()
        self._printed[message.id] = max(printed, len(message.content))

    def finish(self, messages: Iterable[Message], *, skip: Iterable[str] = ()) -> None:
        skipped = set(skip)
        for message in messages:
            if message.role == "human" or message.id in skipped:
                continue
            self(message)
            self._output.write("\n")
        self._printed.clear()


class ChatRepl:
    def __init__(self, session: SessionController, printer: TokenPrinter, output: TextIO = sys.stdout) -> None:
        self._session = session
        self._printer = printer
        self._output = output

    async def send(self, text: str) -> None:
        known = [message.id for message in self._session.messages]
        await self._await_reply(self._session.submit(text), known)

    async def handle_command(self, line: str) -> bool:
        """Run one slash command; returns ``False`` when the REPL should stop."""
        command, _, argument = line.partition(" ")
        argument = argument.strip()
        session = self._session
        try:
            if command in ("/exit", "/quit"):
                return False
            if command == "/new":
                thread_id = await session.new_thread()
                self._print(f"Started thread {thread_id}")
            elif command == "/switch" and argument:
                await session.switch_thread(argument)
                self._print(f"Switched to thread {argument}")
                self.print_history()
            elif command == "/delete" and argument:
                active_id = await session.delete_thread(argument)
                self._print(f"Deleted thread {argument}; active thread: {active_id or 'none'}")
            elif command == "/rename" and argument and session.thread_id:
                await session.rename_thread(session.thread_id, argument)
                self._print(f"Renamed thread {session.thread_id}")
            elif command == "/retry":
                known = [message.id for message in session.messages]
                await self._await_reply(session.retry(), known)
            else:
                self._print(_HELP)
        except SessionError as exc:
            self._print(f"Error: {exc}")
        return True

    def print_history(self) -> None:
        for message in self._session.messages:
            speaker = "You" if message.role == "human" else "Agent"
            self._print(f"{speaker}: {message.content}")

    async def _await_reply(self, task: asyncio.Task[None] | None, known: Sequence[str]) -> None:
        if task is None:
            self._print("(nothing sent)")
            return
        await task
        self._printer.finish(self._session.messages, skip=known)
        if self._session.error is not None:
            self._print(f"Error: {self._session.error} (type /retry to try again)")

    def _print(self, text: str) -> None:
        self._output.write(f"{text}\n")
        self._output.flush()


async def run(settings: Settings, *, thread_id: str | None = None) -> int:
    container = build_container(settings)
    printer = TokenPrinter()
    session = build_session(container, on_token=printer)
    repl = ChatRepl(session, printer)
    transport = container.resolve(AgentTransportProtocol)
    store = container.resolve(MessageStoreProtocol)
    try:
        if thread_id:
            await repl.handle_command(f"/switch {thread_id}")
        print(f"Type /exit to quit. {_HELP}")
        while True:
            try:
                line = (await asyncio.to_thread(input, "You: ")).strip()
            except EOFError:
                print()
                break
            if not line:
                continue
            if line.startswith("/"):
                if not await repl.handle_command(line):
                    break
                continue
            await repl.send(line)
    finally:
        await session.aclose()
        await transport.aclose()
        await store.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Chat with a remote agent from the terminal")
    parser.add_argument("--thread", help="Resume an existing thread id")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.effective_log_level)
    try:
        return asyncio.run(run(settings, thread_id=args.thread))
    except ConfigurationError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        print()
        return 130


if __name__ == "__main__":
    sys.exit(main())
