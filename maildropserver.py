# maildropserver v1
# copyright 2021 Andrew Stuart andrew.stuart@supercoders.com.au
# MIT licensed

# DO NOT USE THIS IN PRODUCTION IT IS A DEMONSTRATION ONLY WITH LIKELY LOGIC AND OTHER FLAWS


import argparse
import asyncio
import enum
import logging
import os
import signal
import sys
import weakref
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

import aiofiles

# --- Structured Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - [%(levelname)s] - %(name)s - %(message)s'
)
logger = logging.getLogger(__name__)

# --- Constants ---
DEFAULT_PORT = 6543
RECEIVE_BUFFER_SIZE = 1024
INDEX_FILENAME = 'index.txt'
MESSAGE_SUFFIX = '.txt'
WELCOME_BANNER = "Welcome to myserver!\r\nPlease enter your commands...\r\n"
QUIT_COMMAND = 'quit'

RESPONSE_OK = 'OK'
RESPONSE_ERR = 'ERR'
RESPONSE_LIST_FIRST = 'ERR\n Please open LIST at least one time'
EMPTY_LISTING = '0 messages'


# --- Errors ---
class SpoolError(Exception):
    """A filesystem operation on the spool failed."""


class MessageNotFound(SpoolError):
    pass


class ProtocolError(Exception):
    """Base for rejected requests. ``response`` is what the client receives."""
    response = RESPONSE_ERR

    def __init__(self, detail: str = '', response: Optional[str] = None):
        super().__init__(detail)
        if response is not None:
            self.response = response


class MalformedRequest(ProtocolError):
    pass


class UnknownCommand(MalformedRequest):
    pass


class PreconditionNotMet(ProtocolError):
    pass


class NotFound(ProtocolError):
    pass


# --- Atomic File Operations ---
async def atomic_write(filepath: Path, content: bytes):
    """Write content to file atomically using temp file"""
    temp_path = filepath.with_suffix(filepath.suffix + '.tmp')
    try:
        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(content)
        await asyncio.to_thread(os.rename, temp_path, filepath)
    except Exception:
        # Clean up temp file if it exists
        if temp_path.exists():
            await asyncio.to_thread(os.unlink, temp_path)
        raise


def split_lines(text: str) -> List[str]:
    """Split on line feeds; a final empty line after a trailing newline is not a line."""
    if not text:
        return []
    lines = text.split('\n')
    if lines[-1] == '':
        lines.pop()
    return lines


# --- Per-Mailbox Locking ---
class MailboxLocks:
    """One lock per mailbox name, kept only while someone holds a reference to it."""

    def __init__(self):
        self._locks = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, mailbox: str) -> asyncio.Lock:
        lock = self._locks.get(mailbox)
        if lock is None:
            lock = self._locks[mailbox] = asyncio.Lock()
        return lock


# --- Spool Store ---
class SpoolStore:
    """
    Directory-per-mailbox, file-per-message store.

    Layout under the spool root:
        <mailbox>/index.txt   highest message id ever issued
        <mailbox>/<id>.txt    sender, receiver, subject, body (one per line)

    Mailbox names and message ids are used verbatim as path components.
    Callers that run concurrently must hold ``locks.get(mailbox)`` around
    mutations of one mailbox.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.locks = MailboxLocks()

    def mailbox_path(self, mailbox: str) -> Path:
        return self.root / mailbox

    def index_path(self, mailbox: str) -> Path:
        return self.mailbox_path(mailbox) / INDEX_FILENAME

    def message_path(self, mailbox: str, message_id) -> Path:
        return self.mailbox_path(mailbox) / f"{message_id}{MESSAGE_SUFFIX}"

    async def ensure_root(self) -> None:
        try:
            await asyncio.to_thread(self.root.mkdir, parents=True, exist_ok=True)
        except (OSError, ValueError) as e:
            raise SpoolError(f"Cannot create spool root {self.root}: {e}") from e

    async def mailbox_exists(self, mailbox: str) -> bool:
        path = self.mailbox_path(mailbox)
        try:
            return await asyncio.to_thread(path.is_dir)
        except (OSError, ValueError) as e:
            raise SpoolError(f"Cannot check mailbox {path}: {e}") from e

    async def ensure_mailbox(self, mailbox: str) -> bool:
        """
        Create the mailbox directory and a zeroed sequence counter if absent.

        Returns True when the mailbox was created by this call.
        """
        if await self.mailbox_exists(mailbox):
            return False
        path = self.mailbox_path(mailbox)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to create mailbox {path}: {e}") from e
        await self._write_sequence(mailbox, 0)
        logger.info(f"Created mailbox {mailbox}")
        return True

    async def read_sequence(self, mailbox: str) -> int:
        path = self.index_path(mailbox)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                first_line = await f.readline()
            return int(first_line.strip())
        except (OSError, ValueError) as e:
            logger.warning(f"Sequence counter {path} unreadable ({e}), starting from 0")
            return 0

    async def _write_sequence(self, mailbox: str, value: int) -> None:
        path = self.index_path(mailbox)
        try:
            await atomic_write(path, f"{value}\n".encode('utf-8'))
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to update sequence counter {path}: {e}") from e

    async def next_sequence(self, mailbox: str) -> int:
        """Increment the persisted counter and return the new message id."""
        value = await self.read_sequence(mailbox) + 1
        await self._write_sequence(mailbox, value)
        return value

    async def write_message(self, mailbox: str, message_id: int, sender: str,
                            receiver: str, subject: str, body: str) -> Path:
        path = self.message_path(mailbox, message_id)
        content = ''.join(f"{line}\n" for line in (sender, receiver, subject, body))
        try:
            await atomic_write(path, content.encode('utf-8'))
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to write message {path}: {e}") from e
        return path

    async def list_message_files(self, mailbox: str) -> List[str]:
        """Names of every regular file in the mailbox, in directory order."""
        def scan(path: Path) -> List[str]:
            with os.scandir(path) as entries:
                return [entry.name for entry in entries if entry.is_file()]

        path = self.mailbox_path(mailbox)
        try:
            return await asyncio.to_thread(scan, path)
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to list mailbox {path}: {e}") from e

    async def message_exists(self, mailbox: str, message_id: str) -> bool:
        path = self.message_path(mailbox, message_id)
        try:
            return await asyncio.to_thread(path.exists)
        except (OSError, ValueError) as e:
            raise SpoolError(f"Cannot check message {path}: {e}") from e

    async def read_message(self, mailbox: str, message_id: str) -> str:
        path = self.message_path(mailbox, message_id)
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8', errors='replace', newline='') as f:
                return await f.read()
        except FileNotFoundError as e:
            raise MessageNotFound(f"No message {path}") from e
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to read message {path}: {e}") from e

    async def delete_message(self, mailbox: str, message_id: str) -> None:
        path = self.message_path(mailbox, message_id)
        try:
            await asyncio.to_thread(os.unlink, path)
        except FileNotFoundError as e:
            raise MessageNotFound(f"No message {path}") from e
        except (OSError, ValueError) as e:
            raise SpoolError(f"Failed to delete message {path}: {e}") from e


# --- Command Parser ---
class Command(enum.Enum):
    SEND = 'SEND'
    LIST = 'LIST'
    DEL = 'DEL'
    READ = 'READ'
    UNKNOWN = ''


KNOWN_COMMANDS = (Command.SEND, Command.LIST, Command.DEL, Command.READ)

COMMAND_ARITY = {
    Command.SEND: 5,
    Command.LIST: 2,
    Command.DEL: 3,
    Command.READ: 3,
}


@dataclass
class Request:
    command: Command
    fields: List[str]

    @property
    def field_count(self) -> int:
        return len(self.fields)


def strip_line_ending(text: str) -> str:
    if text.endswith('\r\n'):
        return text[:-2]
    if text.endswith('\n'):
        return text[:-1]
    return text


def classify(text: str) -> Command:
    for command in KNOWN_COMMANDS:
        if text.startswith(command.value):
            return command
    return Command.UNKNOWN


def parse_request(raw: str) -> Request:
    """
    Turn one received unit into a Request.

    Fields are the lines of the request, untouched. The command is picked
    by prefix of the first line, so ``LISTX`` is still a LIST.
    """
    text = strip_line_ending(raw)
    return Request(command=classify(text), fields=split_lines(text))


# --- Session State ---
class SessionState(enum.Enum):
    NO_LIST_YET = 'no-list-yet'
    LISTED_ONCE = 'listed-once'


@dataclass
class Session:
    """
    Per-connection state, kept only in memory.

    READ and DEL are refused until a LIST succeeded on this connection.
    There is no way back to NO_LIST_YET.
    """
    peer: str = 'unknown'
    state: SessionState = SessionState.NO_LIST_YET

    @property
    def has_listed(self) -> bool:
        return self.state is SessionState.LISTED_ONCE

    def mark_listed(self) -> None:
        if self.state is SessionState.NO_LIST_YET:
            logger.debug(f"Session {self.peer} unlocked READ/DEL")
            self.state = SessionState.LISTED_ONCE


# --- Server Stats ---
class ServerStats:
    def __init__(self):
        self._lock = asyncio.Lock()
        self.metrics = {
            'connections_accepted': 0,
            'commands_handled': 0,
            'error_responses': 0,
        }

    async def increment_metric(self, key: str):
        async with self._lock:
            self.metrics[key] = self.metrics.get(key, 0) + 1

    async def get_metrics(self) -> dict:
        async with self._lock:
            return self.metrics.copy()


# --- Request Dispatcher ---
def format_listing(filenames: List[str]) -> str:
    # count assumes the counter file is the only non-message file
    lines = [f"{len(filenames) - 1} messages"]
    lines.extend(name for name in filenames if name != INDEX_FILENAME)
    return ''.join(f"{line}\n" for line in lines)


def format_message(content: str) -> str:
    return ''.join(f"{line}\n" for line in [RESPONSE_OK] + split_lines(content))


class RequestDispatcher:
    def __init__(self, store: SpoolStore, stats: Optional[ServerStats] = None):
        self.store = store
        self.stats = stats or ServerStats()
        self._handlers = {
            Command.SEND: self.handle_send,
            Command.LIST: self.handle_list,
            Command.DEL: self.handle_del,
            Command.READ: self.handle_read,
        }

    async def dispatch(self, session: Session, raw: str) -> str:
        request = parse_request(raw)
        logger.info(f"{session.peer}: {request.command.name} with {request.field_count} fields")
        await self.stats.increment_metric('commands_handled')
        try:
            handler = self._handlers.get(request.command)
            if handler is None:
                raise UnknownCommand(f"unrecognised request {request.fields[:1]}")
            return await handler(session, request)
        except ProtocolError as e:
            logger.info(f"{session.peer}: {request.command.name} rejected ({type(e).__name__}: {e})")
            await self.stats.increment_metric('error_responses')
            return e.response
        except SpoolError as e:
            logger.error(f"{session.peer}: storage failure during {request.command.name}: {e}")
            await self.stats.increment_metric('error_responses')
            return RESPONSE_ERR

    @staticmethod
    def _require_arity(request: Request, response: Optional[str] = None) -> None:
        expected = COMMAND_ARITY[request.command]
        if request.field_count != expected:
            raise MalformedRequest(
                f"expected {expected} fields, got {request.field_count}", response
            )

    @staticmethod
    def _require_listed(session: Session, response: Optional[str] = None) -> None:
        if not session.has_listed:
            raise PreconditionNotMet("no LIST on this connection yet", response)

    async def handle_send(self, session: Session, request: Request) -> str:
        self._require_arity(request)
        _, sender, receiver, subject, body = request.fields
        await self.store.ensure_root()
        async with self.store.locks.get(receiver):
            if await self.store.ensure_mailbox(receiver):
                # A new mailbox is only created; the message is not stored.
                return RESPONSE_OK
            message_id = await self.store.next_sequence(receiver)
            await self.store.write_message(receiver, message_id, sender, receiver, subject, body)
        logger.info(f"Stored message {message_id} from {sender} for {receiver}")
        return RESPONSE_OK

    async def handle_list(self, session: Session, request: Request) -> str:
        self._require_arity(request)
        mailbox = request.fields[1]
        async with self.store.locks.get(mailbox):
            if not await self.store.mailbox_exists(mailbox):
                return EMPTY_LISTING
            filenames = await self.store.list_message_files(mailbox)
        session.mark_listed()
        return format_listing(filenames)

    async def handle_del(self, session: Session, request: Request) -> str:
        self._require_listed(session)
        self._require_arity(request)
        _, mailbox, message_id = request.fields
        async with self.store.locks.get(mailbox):
            if not await self.store.message_exists(mailbox, message_id):
                raise NotFound(f"{mailbox}/{message_id}")
            try:
                await self.store.delete_message(mailbox, message_id)
            except MessageNotFound as e:
                raise NotFound(str(e)) from e
        logger.info(f"Deleted message {message_id} from {mailbox}")
        return RESPONSE_OK

    async def handle_read(self, session: Session, request: Request) -> str:
        self._require_listed(session, RESPONSE_LIST_FIRST)
        self._require_arity(request, RESPONSE_LIST_FIRST)
        _, mailbox, message_id = request.fields
        async with self.store.locks.get(mailbox):
            if not await self.store.message_exists(mailbox, message_id):
                raise NotFound(f"{mailbox}/{message_id}")
            try:
                content = await self.store.read_message(mailbox, message_id)
            except MessageNotFound as e:
                raise NotFound(str(e)) from e
        return format_message(content)


# --- Task Manager for Proper Cleanup ---
class TaskManager:
    def __init__(self):
        self.tasks: Set[asyncio.Task] = set()

    def add(self, task: asyncio.Task) -> asyncio.Task:
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def create_task(self, coro) -> asyncio.Task:
        return self.add(asyncio.create_task(coro))

    async def cancel_all(self):
        if self.tasks:
            logger.info(f"Cancelling {len(self.tasks)} connection tasks...")
            for task in list(self.tasks):
                if not task.done():
                    task.cancel()
            try:
                await asyncio.gather(*self.tasks, return_exceptions=True)
            except Exception as e:
                logger.error(f"Error during task cancellation: {e}")
            finally:
                self.tasks.clear()
                logger.info("All connection tasks cancelled.")


# --- Configuration with Validation ---
def load_config(config_path: Path = Path('config.ini')) -> ConfigParser:
    config = ConfigParser()
    config['server'] = {
        'host': '0.0.0.0',
        'port': str(DEFAULT_PORT),
        'spool_directory': '~/.maildropserver/spool',
        'receive_buffer_size': str(RECEIVE_BUFFER_SIZE),
        'log_level': 'INFO',
    }
    if config_path.exists():
        config.read(config_path)
    else:
        with open(config_path, 'w') as f:
            config.write(f)
        logger.info(f"Created default {config_path}")

    receive_buffer_size = config.getint('server', 'receive_buffer_size')
    if receive_buffer_size < 2:
        raise ValueError(f"receive_buffer_size must be at least 2, got {receive_buffer_size}")

    spool_raw = config.get('server', 'spool_directory')
    config.set('server', 'spool_directory', os.path.expanduser(spool_raw))
    return config


# --- Mail Drop Server ---
class MailDropServer:
    def __init__(self, config: ConfigParser):
        settings = config['server']
        self.host = settings.get('host')
        self.port = settings.getint('port')
        self.receive_buffer_size = settings.getint('receive_buffer_size')
        self.store = SpoolStore(Path(settings.get('spool_directory')))
        self.stats = ServerStats()
        self.dispatcher = RequestDispatcher(self.store, self.stats)
        self.task_manager = TaskManager()
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._on_connect, self.host, self.port, reuse_address=True
        )
        # port 0 asks the OS for a free port
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info(f"Mail drop server started on {self.host}:{self.port}, spool {self.store.root}")

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.task_manager.add(asyncio.current_task())
        await self.serve_connection(reader, writer)

    async def serve_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """
        Serve one client until it disconnects or sends ``quit``.

        Each read of up to ``receive_buffer_size - 1`` bytes is one request.
        """
        peername = writer.get_extra_info('peername')
        peer = f"{peername[0]}:{peername[1]}" if peername else 'unknown'
        session = Session(peer=peer)
        logger.info(f"Client connected from {peer}")
        await self.stats.increment_metric('connections_accepted')
        try:
            writer.write(WELCOME_BANNER.encode('utf-8'))
            await writer.drain()
            while True:
                data = await reader.read(self.receive_buffer_size - 1)
                if not data:
                    logger.info(f"Client {peer} closed remote socket")
                    break
                raw = data.decode('utf-8', errors='replace')
                logger.debug(f"Message received from {peer}: {raw!r}")
                # quit gets no OK, the connection just closes
                if strip_line_ending(raw) == QUIT_COMMAND:
                    logger.info(f"Client {peer} quit")
                    break
                response = await self.dispatcher.dispatch(session, raw)
                writer.write(response.encode('utf-8'))
                await writer.drain()
        except OSError as e:
            logger.warning(f"Connection with {peer} failed: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error closing connection with {peer}: {e}")
            logger.info(f"Connection from {peer} closed")

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        # in-flight connections are cut, not drained
        await self.task_manager.cancel_all()
        await self._server.wait_closed()
        self._server = None
        metrics = await self.stats.get_metrics()
        logger.info(f"Final metrics: {metrics}")


# --- Main Application ---
async def run_server(config: ConfigParser) -> None:
    shutdown_event = asyncio.Event()

    def signal_handler():
        if not shutdown_event.is_set():
            logger.info("Shutdown signal received")
            shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    server = MailDropServer(config)
    try:
        await server.start()
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down...")
        await server.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        logger.info("Shutdown complete")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="maildropserver - line based mail drop server")
    parser.add_argument("port", nargs="?", type=int, help="TCP port to listen on")
    parser.add_argument("spool_directory", nargs="?", help="Directory holding the mailboxes")
    parser.add_argument("--host", help="Address to bind")
    parser.add_argument("--config", type=Path, default=Path('config.ini'), help="Config file path")
    return parser


def apply_arguments(config: ConfigParser, args: argparse.Namespace) -> ConfigParser:
    if args.port is not None:
        config.set('server', 'port', str(args.port))
    if args.spool_directory:
        config.set('server', 'spool_directory', os.path.expanduser(args.spool_directory))
    if args.host:
        config.set('server', 'host', args.host)
    return config


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)
    try:
        config = apply_arguments(load_config(args.config), args)
        logging.getLogger().setLevel(config.get('server', 'log_level').upper())
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.critical(f"Fatal error in main: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
