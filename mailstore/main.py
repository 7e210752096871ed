#!/usr/bin/env python3
"""
Mailstore
Orchestrator wiring the transcoding pipeline to MongoDB, plus a small CLI
"""

import argparse
import importlib
import logging
import sys
from pathlib import Path
from typing import Any, Iterable, List, Optional

from pymongo import MongoClient

from mailstore.modules.attachment_spooler import AttachmentSpooler
from mailstore.modules.errors import MailStoreError, RepositoryError
from mailstore.modules.message_builder import RawMessageBuilder
from mailstore.modules.message_data import StructuredMessage
from mailstore.modules.message_parser import RawMessageParser, Source
from mailstore.modules.message_repository import MessageRepository
from mailstore.modules.post_parse import PostParsePipeline
from mailstore.modules.user_directory import UserDirectory
from mailstore.utils.config import Config, ConfigurationError
from mailstore.utils.structured_logging import JSONFormatter


def resolve_step(path: str):
    """Import a ``package.module:function`` post-parse step."""
    module_name, _, attr = path.partition(":")
    try:
        return getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load post-parse step '{path}': {e}") from e


class MailStore:
    """
    Persistence adapter between raw RFC822 messages and MongoDB records

    Args:
        config: Loaded configuration
        client: Optional pre-built MongoClient (tests pass a mongomock client)
    """

    def __init__(self, config: Config, client: Optional[Any] = None):
        self.config = config
        self.debug = config.system.debug
        self.logger = logging.getLogger("MailStore")
        self._client = client

        self.pipeline = PostParsePipeline(
            [resolve_step(path) for path in config.system.post_parse_steps]
        )

        storage = config.storage
        self.spooler = AttachmentSpooler(
            storage.attachments_path,
            temp_dir=storage.temp_path,
            max_workers=storage.spool_workers,
        )
        self.builder = RawMessageBuilder(self.spooler)

        self.messages: Optional[MessageRepository] = None
        self.users: Optional[UserDirectory] = None

    def init(self) -> "MailStore":
        """Connect to the database and prepare attachment storage."""
        db_config = self.config.database
        if self._client is None:
            self._client = MongoClient(db_config.connection)
        db = self._client[db_config.database]

        self.messages = MessageRepository(db[db_config.messages], debug=self.debug)
        self.users = UserDirectory(db[db_config.users], self.config.system.server_name)

        Path(self.config.storage.attachments_path).mkdir(parents=True, exist_ok=True)
        self.logger.info(
            "Mail store ready (database=%s, attachments=%s)",
            db_config.database, self.config.storage.attachments_path,
        )
        return self

    def parse_raw_msg(self, source: Source) -> StructuredMessage:
        """
        Parse a raw message, relocate its attachments and run post-parse steps

        Raises:
            ParseError, SpoolError, PipelineError
        """
        storage = self.config.storage
        parser = RawMessageParser(
            self.spooler,
            timeout=storage.parse_timeout,
            max_mime_parts=storage.max_mime_parts,
        )
        message = parser.parse(source)
        try:
            return self.pipeline.run(message)
        except MailStoreError:
            self.delete_attachments([message])
            raise

    def build_raw_msg(self, message: StructuredMessage) -> bytes:
        return self.builder.build(message)

    def delete_attachments(self, messages: Iterable[StructuredMessage]) -> int:
        """Remove the stored attachment files of messages (e.g. after remove())."""
        removed = 0
        for message in messages:
            for attached in message.attached_files:
                if self.spooler.remove(attached.storage_path):
                    removed += 1
        return removed

    def close(self) -> None:
        self.spooler.shutdown()
        if self._client is not None:
            self._client.close()

    def __enter__(self):
        return self.init()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    @staticmethod
    def setup_logging(config: Config) -> None:
        """Setup logging configuration"""
        system = config.system
        log_path = Path(system.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Resolve log level with safe fallback
        level_name = str(system.log_level).upper()
        level = logging.getLevelName(level_name)
        valid_level = isinstance(level, int)
        if not valid_level:
            level = logging.INFO

        if system.log_format == "json":
            formatter: logging.Formatter = JSONFormatter()
        else:
            formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        handlers = [logging.FileHandler(system.log_file), logging.StreamHandler(sys.stderr)]
        for handler in handlers:
            handler.setFormatter(formatter)
        logging.basicConfig(level=level, handlers=handlers, force=True)

        if not valid_level:
            logging.getLogger("MailStore").warning(
                "Invalid log level '%s'; defaulting to INFO", system.log_level
            )


# ----------------------------------------------------------------------
# CLI
# ----------------------------------------------------------------------

def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailstore", description="Store and rebuild RFC822 messages")
    parser.add_argument("--env", default=".env", help="dotenv configuration file")
    sub = parser.add_subparsers(dest="command", required=True)

    imp = sub.add_parser("import", help="parse a raw message and store it")
    imp.add_argument("file", help="path to an .eml file ('-' for stdin)")
    imp.add_argument("--user", help="owner username or email")
    imp.add_argument("--folder", default="INBOX")
    imp.add_argument("--flag", action="append", default=[], dest="flags")
    imp.add_argument("--uid", type=int)

    exp = sub.add_parser("export", help="rebuild the raw bytes of a stored message")
    exp.add_argument("message_id")
    exp.add_argument("-o", "--output", help="write to file instead of stdout")

    cnt = sub.add_parser("count", help="count stored messages")
    cnt.add_argument("--user")
    cnt.add_argument("--folder")
    return parser


def _find_by_id(store: MailStore, message_id: str) -> StructuredMessage:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        key: Any = ObjectId(message_id)
    except InvalidId:
        key = message_id
    doc = store.messages.collection.find_one({"_id": key})
    if doc is None:
        raise MailStoreError(f"No message with id {message_id}")
    return StructuredMessage.from_document(doc)


def _owner(store: MailStore, username: Optional[str]):
    if not username:
        return None
    user = store.users.lookup(username)
    if user is None:
        raise MailStoreError(f"Unknown user '{username}'")
    return user


def run(argv: Optional[List[str]] = None, client: Optional[Any] = None) -> int:
    args = _build_arg_parser().parse_args(argv)

    config = Config(args.env)
    try:
        config.validate()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    MailStore.setup_logging(config)
    logger = logging.getLogger("MailStore")

    try:
        with MailStore(config, client=client) as store:
            if args.command == "import":
                owner = _owner(store, args.user)
                source = sys.stdin.buffer if args.file == "-" else open(args.file, "rb")
                with source:
                    message = store.parse_raw_msg(source)
                message.user = owner["_id"] if owner else None
                message.folder = args.folder
                message.flags = args.flags
                message.uid = args.uid
                try:
                    store.messages.insert(message)
                except RepositoryError:
                    store.delete_attachments([message])
                    raise
                print(message.id)
            elif args.command == "export":
                message = _find_by_id(store, args.message_id)
                raw = store.build_raw_msg(message)
                if args.output:
                    Path(args.output).write_bytes(raw)
                else:
                    sys.stdout.buffer.write(raw)
            elif args.command == "count":
                print(store.messages.count(_owner(store, args.user), args.folder))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return 1
    except (MailStoreError, OSError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    return 0


def main():
    """Main entry point"""
    sys.exit(run())


if __name__ == "__main__":
    main()
