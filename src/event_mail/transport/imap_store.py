"""IMAP adapter exposing a mailbox through the read-only mail store contract."""

from __future__ import annotations

import imaplib
import logging
import re
import time
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.message import EmailMessage
from email.parser import BytesHeaderParser
from email.policy import default as default_policy
from email.utils import getaddresses
from types import TracebackType
from typing import Any

from ..core.config import ImapSettings
from ..core.interfaces import (
    FilterUnsupportedError,
    FolderHandle,
    MailHandle,
    MailStore,
    MailStoreError,
    PropertyTag,
    StoreHandle,
)
from ..core.models import FolderKind
from ..mailstore.filters import StoreFilter

LOGGER = logging.getLogger(__name__)

GMAIL_EXTENSION = "X-GM-EXT-1"
ENTRY_SEPARATOR = "|"
HEADER_FIELDS = "MESSAGE-ID IN-REPLY-TO REFERENCES SUBJECT FROM TO CC"
MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_UID_PATTERN = re.compile(rb"UID (\d+)")
_THREAD_PATTERN = re.compile(rb"X-GM-THRID (\d+)")
_LIST_PATTERN = re.compile(
    r'^\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)$'
)
_MESSAGE_ID_PATTERN = re.compile(r"<[^<>]+>")


class ImapError(MailStoreError):
    """Wrap low level IMAP errors with additional context."""


@dataclass(slots=True)
class ImapStoreHandle:
    """The single store an IMAP account exposes."""

    store_id: str

    def release(self) -> None:
        return None


@dataclass(slots=True)
class ImapFolder:
    """A selectable IMAP mailbox."""

    name: str
    store_id: str

    def release(self) -> None:
        return None


@dataclass(slots=True)
class ImapMessage:
    """Headers and fetch metadata of one message, detached from the session."""

    entry_id: str
    store_id: str
    mailbox: str
    uid: int
    headers: EmailMessage
    received_at: datetime | None = None
    thread_id: str | None = None
    released: bool = False

    def release(self) -> None:
        self.released = True


@dataclass(slots=True)
class _ImapItems:
    """UIDs matched by a search, fetched one at a time while iterating."""

    store: ImapMailStore
    mailbox: str
    uidvalidity: str
    uids: list[int]
    released: bool = field(default=False)

    def __iter__(self) -> Iterator[MailHandle]:
        for uid in self.uids:
            if self.released:
                return
            message = self.store.fetch_message(self.mailbox, self.uidvalidity, uid)
            if message is not None:
                yield message

    def release(self) -> None:
        self.released = True


def format_entry_id(mailbox: str, uidvalidity: str, uid: int) -> str:
    """Encode the mailbox position of a message as an entry id."""
    return ENTRY_SEPARATOR.join((mailbox, uidvalidity, str(uid)))


def parse_entry_id(entry_id: str) -> tuple[str, str, int] | None:
    """Decode an entry id; ``None`` if it was not produced by this adapter."""
    mailbox, sep, rest = entry_id.rpartition(ENTRY_SEPARATOR)
    if not sep:
        return None
    mailbox, sep, uidvalidity = mailbox.rpartition(ENTRY_SEPARATOR)
    if not sep or not mailbox or not rest.isdigit():
        return None
    return mailbox, uidvalidity, int(rest)


def imap_date(value: datetime) -> str:
    """Format ``value`` as an IMAP ``date`` (locale independent)."""
    return f"{value.day:02d}-{MONTHS[value.month - 1]}-{value.year}"


def quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class ImapMailStore(MailStore):
    """Read-only mail store over one IMAP account.

    Mailboxes are only ever opened with ``EXAMINE``. Entry ids encode
    ``mailbox|UIDVALIDITY|UID`` and therefore go stale when a message moves
    or the server resets the mailbox, which is exactly the drift the
    resolver recovers from. Conversation ids are Gmail thread ids where the
    server offers them and the thread root message id otherwise.
    """

    def __init__(self, settings: ImapSettings) -> None:
        """Initialise the store with connection settings."""
        self._settings = settings
        self._connection: imaplib.IMAP4 | imaplib.IMAP4_SSL | None = None
        self._selected: tuple[str, str] | None = None
        self._delimiter: str | None = None
        self._parser = BytesHeaderParser(policy=default_policy)
        self.store_id = f"imap://{settings.username or 'anonymous'}@{settings.host}"

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> ImapMailStore:
        """Connect on entering a context manager scope."""
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure resources are released on context exit."""
        self.close()

    # Connection management ------------------------------------------------------
    def connect(self) -> None:
        """Establish and authenticate the IMAP connection."""
        if self._connection is not None:
            return

        try:
            if self._settings.use_ssl:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s via SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection: imaplib.IMAP4 | imaplib.IMAP4_SSL = imaplib.IMAP4_SSL(
                    self._settings.host, self._settings.port
                )
            else:
                LOGGER.debug(
                    "Connecting to IMAP host %s:%s without SSL",
                    self._settings.host,
                    self._settings.port,
                )
                connection = imaplib.IMAP4(self._settings.host, self._settings.port)

            username = self._settings.username
            password = self._settings.app_password
            if username is None or password is None:
                raise ImapError("IMAP credentials are not configured")

            LOGGER.debug("Authenticating as %s", username)
            connection.login(username, password)
            self._connection = connection
        except imaplib.IMAP4.error as exc:  # pragma: no cover - network dependent
            raise ImapError("Failed to connect to IMAP server") from exc

    def close(self) -> None:
        """Terminate the IMAP session cleanly."""
        if self._connection is None:
            return
        try:
            if self._selected is not None:
                LOGGER.debug("Closing examined mailbox %s", self._selected[0])
                self._connection.close()
        except imaplib.IMAP4.error:  # pragma: no cover - depends on server state
            LOGGER.debug("IMAP close raised; continuing with logout")
        finally:
            try:
                self._connection.logout()
            except imaplib.IMAP4.error:  # pragma: no cover
                LOGGER.debug("IMAP logout raised; suppressing during shutdown")
            self._connection = None
            self._selected = None

    @property
    def supports_threads(self) -> bool:
        connection = self._require_connection()
        return GMAIL_EXTENSION in (connection.capabilities or ())

    # MailStore API ----------------------------------------------------------------
    def resolve_by_id(
        self, entry_id: str, store_id: str | None = None
    ) -> MailHandle | None:
        """Return the message at ``entry_id`` if it still exists there."""
        if store_id and store_id.casefold() != self.store_id.casefold():
            return None
        parsed = parse_entry_id(entry_id)
        if parsed is None:
            return None
        mailbox, uidvalidity, uid = parsed
        try:
            current = self._examine(mailbox)
        except ImapError as exc:
            LOGGER.debug("Mailbox %s unavailable for %s: %s", mailbox, entry_id, exc)
            return None
        if current != uidvalidity:
            LOGGER.debug("UIDVALIDITY of %s changed; %s is stale", mailbox, entry_id)
            return None
        return self.fetch_message(mailbox, uidvalidity, uid)

    def list_stores(self) -> Sequence[StoreHandle]:
        return [ImapStoreHandle(self.store_id)]

    def default_store(self) -> StoreHandle | None:
        return ImapStoreHandle(self.store_id)

    def default_folder(self, store: StoreHandle, kind: FolderKind) -> FolderHandle | None:
        if store.store_id != self.store_id:
            return None
        name = {
            FolderKind.INBOX: self._settings.inbox,
            FolderKind.SENT: self._settings.sent_folder,
            FolderKind.DELETED: self._settings.deleted_folder,
        }[kind]
        if not name:
            return None
        return ImapFolder(name=name, store_id=self.store_id)

    def child_folders(self, folder: FolderHandle) -> Sequence[FolderHandle]:
        """Return the selectable direct children of ``folder``."""
        connection = self._require_connection()
        delimiter = self._hierarchy_delimiter()
        if not delimiter:
            return []
        pattern = quote_mailbox(f"{folder.name}{delimiter}%")
        try:
            status, data = connection.list('""', pattern)
        except imaplib.IMAP4.error as exc:
            raise ImapError(f"Failed to list children of {folder.name}") from exc
        if status != "OK":
            raise ImapError(f"Failed to list children of {folder.name}")
        children: list[FolderHandle] = []
        for flags, _, name in _parse_list_response(data):
            if "\\noselect" in flags.casefold() or name == folder.name:
                continue
            children.append(ImapFolder(name=name, store_id=self.store_id))
        return children

    def enumerate_folder(
        self, folder: FolderHandle, store_filter: StoreFilter, cutoff: datetime
    ) -> _ImapItems:
        """Search ``folder`` eagerly and return its matches newest-first."""
        connection = self._require_connection()
        criteria = ["SINCE", imap_date(store_filter.received_since)]
        conversation_id = store_filter.conversation_id
        if conversation_id is not None:
            if not self.supports_threads or not conversation_id.isdigit():
                raise FilterUnsupportedError(
                    f"Conversation filter unsupported for {conversation_id!r}"
                )
            criteria.extend(["X-GM-THRID", conversation_id])

        uidvalidity = self._examine(folder.name)
        LOGGER.debug("Searching %s with %s", folder.name, " ".join(criteria))
        try:
            status, data = connection.uid("SEARCH", None, *criteria)  # type: ignore[arg-type]
        except imaplib.IMAP4.error as exc:
            if conversation_id is not None:
                raise FilterUnsupportedError(str(exc)) from exc
            raise ImapError(f"Failed to search {folder.name}") from exc
        if status != "OK":
            if conversation_id is not None:
                raise FilterUnsupportedError(f"Server rejected thread search: {data!r}")
            raise ImapError(f"Failed to search {folder.name}")

        raw_ids = data[0].split() if data and data[0] else []
        uids = sorted((int(raw) for raw in raw_ids), reverse=True)
        LOGGER.debug("Search of %s since %s matched %s", folder.name, cutoff, len(uids))
        return _ImapItems(self, folder.name, uidvalidity, uids)

    def get_property(self, message: MailHandle, tag: PropertyTag) -> Any:
        if not isinstance(message, ImapMessage):
            raise ImapError(f"Unsupported handle {type(message).__name__}")
        if message.released:
            raise ImapError(f"Message {message.entry_id} was released")
        headers = message.headers
        if tag is PropertyTag.ENTRY_ID:
            return message.entry_id
        if tag is PropertyTag.STORE_ID:
            return message.store_id
        if tag is PropertyTag.INTERNET_MESSAGE_ID:
            return _header(headers, "Message-ID")
        if tag is PropertyTag.CONVERSATION_ID:
            return message.thread_id or thread_root(headers)
        if tag is PropertyTag.SUBJECT:
            return _header(headers, "Subject")
        if tag is PropertyTag.SENDER:
            return _header(headers, "From")
        if tag is PropertyTag.RECIPIENTS:
            values = [_header(headers, "To") or "", _header(headers, "Cc") or ""]
            return tuple(address for _, address in getaddresses(values) if address)
        if tag is PropertyTag.RECEIVED_AT:
            return message.received_at
        if tag is PropertyTag.IN_REPLY_TO:
            return _first_message_id(_header(headers, "In-Reply-To"))
        raise ImapError(f"Unknown property {tag}")

    # Fetch helpers ----------------------------------------------------------------
    def fetch_message(self, mailbox: str, uidvalidity: str, uid: int) -> ImapMessage | None:
        """Fetch headers of ``uid``; ``None`` when the message no longer exists."""
        connection = self._require_connection()
        if self._examine(mailbox) != uidvalidity:
            return None
        items = "UID INTERNALDATE"
        if self.supports_threads:
            items += " X-GM-THRID"
        items = f"({items} BODY.PEEK[HEADER.FIELDS ({HEADER_FIELDS})])"
        try:
            status, data = connection.uid("FETCH", str(uid), items)
        except imaplib.IMAP4.error as exc:
            raise ImapError(f"Failed to fetch UID {uid} from {mailbox}") from exc
        if status != "OK":
            raise ImapError(f"Failed to fetch UID {uid} from {mailbox}")
        for entry in data or ():
            if not isinstance(entry, tuple) or len(entry) != 2:
                continue
            meta, payload = entry
            headers = self._parser.parsebytes(payload or b"")
            thread = _THREAD_PATTERN.search(meta)
            return ImapMessage(
                entry_id=format_entry_id(mailbox, uidvalidity, uid),
                store_id=self.store_id,
                mailbox=mailbox,
                uid=uid,
                headers=headers,  # type: ignore[arg-type]
                received_at=_internal_date(meta),
                thread_id=thread.group(1).decode() if thread else None,
            )
        return None

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> imaplib.IMAP4 | imaplib.IMAP4_SSL:
        if self._connection is None:
            raise ImapError("IMAP connection has not been established")
        return self._connection

    def _examine(self, mailbox: str) -> str:
        """Open ``mailbox`` read-only and return its UIDVALIDITY."""
        if self._selected is not None and self._selected[0] == mailbox:
            return self._selected[1]
        connection = self._require_connection()
        try:
            status, _ = connection.select(quote_mailbox(mailbox), readonly=True)
        except imaplib.IMAP4.error as exc:
            raise ImapError(f"Unable to examine mailbox '{mailbox}'") from exc
        if status != "OK":
            raise ImapError(f"Unable to examine mailbox '{mailbox}'")
        _, values = connection.response("UIDVALIDITY")
        raw = values[0] if values and values[0] is not None else b""
        uidvalidity = raw.decode() if isinstance(raw, bytes) else str(raw)
        self._selected = (mailbox, uidvalidity)
        return uidvalidity

    def _hierarchy_delimiter(self) -> str:
        if self._delimiter is None:
            connection = self._require_connection()
            status, data = connection.list('""', '""')
            delimiter = ""
            if status == "OK":
                for _, value, _ in _parse_list_response(data):
                    delimiter = value
                    break
            self._delimiter = delimiter
        return self._delimiter


def thread_root(headers: EmailMessage) -> str | None:
    """Derive a conversation id from the reference chain of ``headers``."""
    for name in ("References", "In-Reply-To", "Message-ID"):
        found = _first_message_id(_header(headers, name))
        if found:
            return found
    return None


def _header(headers: EmailMessage, name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first_message_id(value: str | None) -> str | None:
    if not value:
        return None
    match = _MESSAGE_ID_PATTERN.search(value)
    return match.group(0) if match else value.strip() or None


def _internal_date(meta: bytes) -> datetime | None:
    parsed = imaplib.Internaldate2tuple(meta)
    if parsed is None:
        return None
    return datetime.fromtimestamp(time.mktime(parsed), tz=UTC)


def _parse_list_response(data: Sequence[Any]) -> Iterator[tuple[str, str, str]]:
    """Yield ``(flags, delimiter, name)`` for each LIST response line."""
    for raw in data or ():
        if raw is None:
            continue
        if isinstance(raw, tuple):
            raw = raw[0] + b" " + raw[1]
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        match = _LIST_PATTERN.match(line.strip())
        if match is None:
            continue
        delimiter = match.group("delimiter")
        delimiter = "" if delimiter == "NIL" else delimiter.strip('"')
        name = match.group("name").strip()
        if name.startswith('"') and name.endswith('"'):
            name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        yield match.group("flags"), delimiter, name


__all__ = [
    "ImapError",
    "ImapFolder",
    "ImapMailStore",
    "ImapMessage",
    "ImapStoreHandle",
    "format_entry_id",
    "imap_date",
    "parse_entry_id",
    "thread_root",
]
