"""Notion bookmarks MCP server.

Captures the page a user is viewing as a bookmark entry appended to a Notion
page (page mode) or added as a row to a Notion database (database mode).

Two parts carry the weight:
- SettingsRepository: durable credentials plus auto-persisted drafts of
  in-progress edits (debounced, or near-immediate on paste)
- SyncEngine: validates credentials against Notion and submits the composed
  bookmark blocks

Tools exposed over MCP drive a BookmarkSession, which plays the popup role.
"""

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, NamedTuple, Optional
from urllib.parse import urlparse

import httpx
from mcp.server.fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-bookmarks")

# =============================================================================
# Constants
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"
REQUEST_TIMEOUT = 30.0

SETTINGS_KEY = "notion_bookmark_settings"
DRAFT_KEY = "notion_bookmark_draft"

DRAFT_DEBOUNCE_DELAY = 0.5  # seconds after the last keystroke
PASTE_SETTLE_DELAY = 0.1  # seconds after a paste

# Notion rejects text objects with more content than this
MAX_TEXT_CONTENT = 2000

ALLOWED_URL_SCHEMES = {"http", "https"}

DEFAULT_STATE_DIR = Path("~/.notion-bookmarks")


# =============================================================================
# Errors
# =============================================================================


class StorageError(Exception):
    """Backing key-value store unavailable or write rejected."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TargetConnectionError(Exception):
    """Notion rejected the credentials/target, or could not be reached."""

    def __init__(self, message: str, http_status: int | None = None):
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class SyncError(Exception):
    """Base class for bookmark append failures."""


class InvalidUrlError(SyncError):
    """The page URL is not an absolute http(s) URL."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Not a web URL: {url!r}")


class RemoteRejectedError(SyncError):
    """Notion answered the append with a non-2xx status."""

    def __init__(self, status: int, body: str, message: str):
        self.status = status
        self.body = body
        self.message = message
        super().__init__(message)


class SyncTransportError(SyncError):
    """The append request never got an HTTP response."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Could not reach Notion: {cause}")


class NotConfiguredError(Exception):
    """No confirmed credentials are stored."""


class TabUnavailableError(Exception):
    """The current page could not be determined."""


# =============================================================================
# ID Normalization
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Args:
        uuid_str: UUID with or without dashes.

    Returns:
        UUID in format xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def extract_uuid_from_url(url: str) -> Optional[str]:
    """Extract a Notion UUID from a page or database URL.

    Handles formats like:
    - https://notion.so/workspace/Page-Title-abc123def456...
    - https://www.notion.so/abc123def456...?v=... (database views)

    Returns:
        Normalized UUID or None if not found.
    """
    match = NOTION_URL_PATTERN.match(url)
    if not match:
        return None

    # The ID is the trailing 32 hex chars, possibly after a title slug
    uuid_match = re.search(r'([0-9a-f]{32}|[0-9a-f-]{36})$', match.group(1), re.IGNORECASE)
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def parse_target_id(value: str) -> str:
    """Turn whatever the user typed into the target field into an API ID.

    Notion URLs and UUIDs (with or without dashes) become dashed UUIDs.
    Anything else is passed through; the connection test decides.

    Raises:
        ValueError: If a URL was given but has no Notion ID in it.
    """
    value = value.strip()
    if value.lower().startswith("http"):
        uuid = extract_uuid_from_url(value)
        if uuid is None:
            raise ValueError(f"No Notion ID found in URL: {value}")
        return uuid
    if UUID_PATTERN.match(value):
        return normalize_uuid(value)
    return value


# =============================================================================
# Data Model
# =============================================================================


class TargetMode(Enum):
    """Which kind of Notion object receives bookmarks."""
    PAGE = "page"
    DATABASE = "database"

    @property
    def collection(self) -> str:
        """API collection the target lives in."""
        return "pages" if self is TargetMode.PAGE else "databases"


@dataclass(frozen=True)
class Credentials:
    """Confirmed API key + target. Never partially filled."""
    api_key: str
    target_id: str

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key) and bool(self.target_id)

    def to_dict(self) -> dict:
        return {"apiKey": self.api_key, "targetId": self.target_id}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Credentials"]:
        """Build from stored JSON; partial or malformed values yield None."""
        if not isinstance(raw, dict):
            return None
        api_key = raw.get("apiKey")
        target_id = raw.get("targetId")
        if not isinstance(api_key, str) or not isinstance(target_id, str):
            return None
        creds = cls(api_key=api_key, target_id=target_id)
        return creds if creds.is_configured else None


# Python field name -> stored JSON key
DRAFT_FIELDS = {
    "api_key": "apiKey",
    "target_id": "targetId",
}


@dataclass
class DraftCredentials:
    """Unconfirmed, auto-persisted edits of the credential fields."""
    api_key: Optional[str] = None
    target_id: Optional[str] = None

    def is_empty(self) -> bool:
        return self.api_key is None and self.target_id is None

    def to_dict(self) -> dict:
        return {
            DRAFT_FIELDS[name]: value
            for name, value in (("api_key", self.api_key), ("target_id", self.target_id))
            if value is not None
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "DraftCredentials":
        if not isinstance(raw, dict):
            return cls()
        values = {}
        for name, key in DRAFT_FIELDS.items():
            value = raw.get(key)
            if isinstance(value, str):
                values[name] = value
        return cls(**values)


def _clean_text(value: Optional[str]) -> Optional[str]:
    """Trim free text; empty-after-trim counts as absent."""
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class BookmarkDraft:
    """What the user wants to bookmark in this session."""
    url: str
    title: Optional[str] = None
    notes: Optional[str] = None

    @property
    def clean_title(self) -> Optional[str]:
        return _clean_text(self.title)

    @property
    def clean_notes(self) -> Optional[str]:
        return _clean_text(self.notes)


class BlockKind(Enum):
    SEPARATOR = "separator"
    TEXT = "text"
    BOOKMARK_LINK = "bookmarkLink"


@dataclass(frozen=True)
class Block:
    """One unit of bookmark content.

    TEXT blocks carry either `text` or a `timestamp` (rendered by Notion as
    a live date mention). Text is sent literally.
    """
    kind: BlockKind
    text: str = ""
    url: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_notion(self) -> dict:
        """Convert to a Notion API block object."""
        if self.kind is BlockKind.BOOKMARK_LINK:
            return {
                "object": "block",
                "type": "bookmark",
                "bookmark": {"url": self.url, "caption": []},
            }
        if self.kind is BlockKind.SEPARATOR:
            rich_text: list[dict] = []
        elif self.timestamp is not None:
            rich_text = [_date_mention(self.timestamp)]
        else:
            rich_text = _plain_rich_text(self.text)
        return {
            "object": "block",
            "type": "paragraph",
            "paragraph": {"rich_text": rich_text},
        }


@dataclass(frozen=True)
class EntryRef:
    """Where an appended bookmark landed.

    Block IDs aren't tracked, so the target ID is the reference. In database
    mode the created row's page ID is also known.
    """
    target_id: str
    page_id: Optional[str] = None
    url: Optional[str] = None


class CurrentPage(NamedTuple):
    url: str
    title: Optional[str]


# Async callable returning the page being viewed, or raising TabUnavailableError
PageSource = Callable[[], Awaitable[CurrentPage]]


# =============================================================================
# Key-Value Stores
# =============================================================================


class KeyValueStore:
    """Durable mapping from string key to JSON-serializable value.

    Implementations raise StorageError when the backing medium fails.
    """

    async def get(self, key: str) -> Any:
        """Return the stored value, or None if absent."""
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def remove(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """In-process store. Values are round-tripped through JSON like on disk."""

    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, str] = {
            key: json.dumps(value) for key, value in (initial or {}).items()
        }

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key} is not JSON-serializable: {e}") from e

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Store backed by one JSON object file.

    Each write replaces the whole file via a temp file + rename, so a reader
    never sees a half-written file.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def _load(self) -> dict:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e

        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt store file {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageError(f"Corrupt store file {self.path}: not a JSON object")
        return data

    def _dump(self, data: dict) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write {self.path}: {e}") from e

    async def get(self, key: str) -> Any:
        return self._load().get(key)

    async def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    async def remove(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


# =============================================================================
# Settings Repository
# =============================================================================


@dataclass
class _PendingWrite:
    value: str
    task: asyncio.Task


class SettingsRepository:
    """Typed access to permanent credentials and transient drafts.

    Draft edits are written in the background. Each field has its own timer:
    a keystroke (re)schedules a write DRAFT_DEBOUNCE_DELAY later, a paste
    schedules one after PASTE_SETTLE_DELAY. A later edit of the same field
    cancels the earlier timer, so a burst of keystrokes becomes one write.

    Scheduling needs a running event loop.
    """

    def __init__(
        self,
        store: KeyValueStore,
        draft_store: Optional[KeyValueStore] = None,
        debounce_delay: float = DRAFT_DEBOUNCE_DELAY,
        paste_delay: float = PASTE_SETTLE_DELAY,
    ):
        self._store = store
        self._draft_store = draft_store if draft_store is not None else store
        self.debounce_delay = debounce_delay
        self.paste_delay = paste_delay
        self._pending: dict[str, _PendingWrite] = {}
        self._tasks: set[asyncio.Task] = set()
        # Draft writes are read-merge-write; serialize them
        self._draft_lock = asyncio.Lock()

    # -- permanent credentials ------------------------------------------------

    async def get_credentials(self) -> Optional[Credentials]:
        try:
            raw = await self._store.get(SETTINGS_KEY)
        except StorageError as e:
            logger.warning(f"Could not load settings, treating as unconfigured: {e.reason}")
            return None
        return Credentials.from_dict(raw)

    async def save_credentials(self, creds: Credentials) -> None:
        if not creds.is_configured:
            raise ValueError("Both API key and target ID are required")
        await self._store.set(SETTINGS_KEY, creds.to_dict())
        logger.info(f"Saved credentials for target {creds.target_id}")

    async def clear_credentials(self) -> None:
        await self._store.remove(SETTINGS_KEY)
        logger.info("Cleared credentials")

    # -- drafts ---------------------------------------------------------------

    async def get_draft(self) -> DraftCredentials:
        try:
            raw = await self._draft_store.get(DRAFT_KEY)
        except StorageError as e:
            logger.warning(f"Could not load draft settings: {e.reason}")
            return DraftCredentials()
        return DraftCredentials.from_dict(raw)

    def update_draft_field(self, field_name: str, value: str, pasted: bool = False) -> None:
        """Schedule a background write of one draft field.

        Args:
            field_name: "api_key" or "target_id".
            value: The input's current value.
            pasted: Use the short paste delay instead of the debounce window.
        """
        if field_name not in DRAFT_FIELDS:
            raise ValueError(f"Unknown draft field: {field_name}")

        previous = self._pending.pop(field_name, None)
        if previous is not None:
            previous.task.cancel()

        delay = self.paste_delay if pasted else self.debounce_delay
        task = asyncio.get_running_loop().create_task(
            self._write_later(field_name, value, delay)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._pending[field_name] = _PendingWrite(value=value, task=task)

    @property
    def pending_fields(self) -> list[str]:
        """Fields with a scheduled but not yet started write."""
        return sorted(self._pending)

    async def _write_later(self, field_name: str, value: str, delay: float) -> None:
        await asyncio.sleep(delay)
        pending = self._pending.get(field_name)
        if pending is not None and pending.task is asyncio.current_task():
            del self._pending[field_name]
        try:
            await self._merge_draft({field_name: value})
        except StorageError as e:
            logger.error(f"Failed to persist draft {field_name}: {e.reason}")

    async def _merge_draft(self, values: dict[str, str]) -> None:
        async with self._draft_lock:
            raw = await self._draft_store.get(DRAFT_KEY)
            draft = raw if isinstance(raw, dict) else {}
            for name, value in values.items():
                draft[DRAFT_FIELDS[name]] = value
            await self._draft_store.set(DRAFT_KEY, draft)

    def _cancel_pending(self) -> dict[str, str]:
        pending, self._pending = self._pending, {}
        for write in pending.values():
            write.task.cancel()
        return {name: write.value for name, write in pending.items()}

    async def flush(self) -> None:
        """Write every pending draft field now and wait for in-flight writes.

        Raises:
            StorageError: If the flushed write fails.
        """
        values = self._cancel_pending()
        in_flight = [t for t in self._tasks if not t.done()]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        if values:
            await self._merge_draft(values)

    async def clear_draft(self) -> None:
        """Drop the stored draft and any write that would recreate it."""
        self._cancel_pending()
        in_flight = [t for t in self._tasks if not t.done()]
        if in_flight:
            await asyncio.gather(*in_flight, return_exceptions=True)
        async with self._draft_lock:
            await self._draft_store.remove(DRAFT_KEY)

    async def aclose(self) -> None:
        await self.flush()


# =============================================================================
# Rich Text
# =============================================================================


def _chunk(text: str, size: int = MAX_TEXT_CONTENT) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)] or [""]


def _plain_rich_text(text: str) -> list[dict]:
    """Rich text for literal text, no markup interpretation."""
    if not text:
        return []
    return [{"type": "text", "text": {"content": piece}} for piece in _chunk(text)]


def _date_mention(moment: datetime) -> dict:
    """A date mention Notion renders as a live timestamp."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return {
        "type": "mention",
        "mention": {"type": "date", "date": {"start": moment.isoformat(timespec="seconds")}},
    }


# =============================================================================
# Bookmark Composer
# =============================================================================


def compose_bookmark(
    url: str,
    title: Optional[str],
    notes: Optional[str],
    now: datetime,
) -> list[Block]:
    """Build the block sequence for one bookmark entry.

    Layout: separator, timestamp, [title], link, [notes]. Title and notes
    are trimmed and left out when empty. The URL is used verbatim.
    """
    blocks = [
        Block(BlockKind.SEPARATOR),
        Block(BlockKind.TEXT, timestamp=now),
    ]

    title = _clean_text(title)
    if title:
        blocks.append(Block(BlockKind.TEXT, text=title))

    blocks.append(Block(BlockKind.BOOKMARK_LINK, url=url))

    notes = _clean_text(notes)
    if notes:
        blocks.append(Block(BlockKind.TEXT, text=notes))

    return blocks


def blocks_to_notion(blocks: list[Block]) -> list[dict]:
    return [block.to_notion() for block in blocks]


def is_web_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    if not url or url != url.strip():
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
        return False
    return not any(c.isspace() for c in parsed.netloc)


# =============================================================================
# Notion API Client
# =============================================================================

_async_client: Optional[httpx.AsyncClient] = None


async def _get_async_client() -> httpx.AsyncClient:
    """Get or create the async HTTP client."""
    global _async_client
    if _async_client is None or _async_client.is_closed:
        _async_client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
    return _async_client


async def _notion_request_async(
    method: str,
    endpoint: str,
    token: str,
    json_body: Optional[dict] = None
) -> dict:
    """Make one authenticated request to the Notion API.

    No retries: a failure is reported to the caller as-is.

    Raises:
        httpx.HTTPStatusError: On a non-2xx response.
        httpx.RequestError: If no response was received.
    """
    client = await _get_async_client()

    headers = {
        "Authorization": f"Bearer {token}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }

    url = f"{NOTION_API_BASE}{endpoint}"

    if method == "GET":
        response = await client.get(url, headers=headers)
    elif method == "POST":
        response = await client.post(url, headers=headers, json=json_body or {})
    elif method == "PATCH":
        response = await client.patch(url, headers=headers, json=json_body or {})
    else:
        raise ValueError(f"Unsupported method: {method}")

    response.raise_for_status()
    return response.json()


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Raw response body of a failed request, truncated."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _remote_message(e: httpx.HTTPStatusError) -> str:
    """Notion's own error message, else a generic HTTP status message."""
    response = e.response
    try:
        message = response.json().get("message")
    except (ValueError, AttributeError):
        message = None
    if isinstance(message, str) and message:
        return message
    return f"HTTP {response.status_code}: {response.reason_phrase}".rstrip(": ")


# =============================================================================
# Connection Validation
# =============================================================================


def get_page_title(page: dict) -> str:
    """Extract title from page properties."""
    for prop in page.get("properties", {}).values():
        if isinstance(prop, dict) and prop.get("type") == "title":
            return "".join(t.get("plain_text", "") for t in prop.get("title", [])) or "Untitled"
    return "Untitled"


def get_database_title(database: dict) -> str:
    """Extract title from database metadata."""
    title_array = database.get("title", [])
    return "".join(t.get("plain_text", "") for t in title_array) or "Untitled"


async def check_target(api_key: str, target_id: str, mode: TargetMode) -> dict:
    """Read the target once to prove the key can reach it.

    Read-only; safe to repeat.

    Returns:
        The page or database object.

    Raises:
        TargetConnectionError: On any non-2xx status or transport failure.
    """
    try:
        return await _notion_request_async(
            "GET", f"/{mode.collection}/{target_id}", api_key
        )
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        logger.warning(f"Connection test for {target_id} failed with HTTP {status}")
        raise TargetConnectionError(_remote_message(e), http_status=status) from e
    except httpx.RequestError as e:
        logger.warning(f"Connection test for {target_id} failed: {e}")
        raise TargetConnectionError(f"Could not reach Notion: {e}") from e


# =============================================================================
# Sync Engine
# =============================================================================


@dataclass(frozen=True)
class RowProperties:
    """Database column names used in database mode."""
    title: str = "Name"
    url: str = "URL"
    notes: str = "Notes"


def _build_row_properties(draft: BookmarkDraft, columns: RowProperties) -> dict:
    """Property values for a new bookmark row. Title falls back to the URL."""
    properties: dict = {
        columns.title: {"title": _plain_rich_text(draft.clean_title or draft.url)},
        columns.url: {"url": draft.url},
    }
    notes = draft.clean_notes
    if notes:
        properties[columns.notes] = {"rich_text": _plain_rich_text(notes)}
    return properties


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Validates credentials and appends bookmark entries to the target."""

    def __init__(
        self,
        mode: TargetMode = TargetMode.PAGE,
        columns: Optional[RowProperties] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.mode = mode
        self.columns = columns or RowProperties()
        self._clock = clock

    async def test_connection(self, creds: Credentials) -> str:
        """Check the credentials reach the target.

        Returns:
            The target's title, for display.

        Raises:
            TargetConnectionError: If Notion rejects the request or is unreachable.
        """
        target = await check_target(creds.api_key, creds.target_id, self.mode)
        if self.mode is TargetMode.DATABASE:
            return get_database_title(target)
        return get_page_title(target)

    async def append_bookmark(self, creds: Credentials, draft: BookmarkDraft) -> EntryRef:
        """Compose and submit one bookmark entry in a single request.

        Raises:
            InvalidUrlError: URL is not http(s); nothing is sent.
            RemoteRejectedError: Notion answered with a non-2xx status.
            SyncTransportError: No response was received.
        """
        if not is_web_url(draft.url):
            raise InvalidUrlError(draft.url)

        blocks = blocks_to_notion(
            compose_bookmark(draft.url, draft.title, draft.notes, self._clock())
        )

        if self.mode is TargetMode.DATABASE:
            method, endpoint = "POST", "/pages"
            body = {
                "parent": {"database_id": creds.target_id},
                "properties": _build_row_properties(draft, self.columns),
                "children": blocks,
            }
        else:
            method, endpoint = "PATCH", f"/blocks/{creds.target_id}/children"
            body = {"children": blocks}

        try:
            result = await _notion_request_async(method, endpoint, creds.api_key, json_body=body)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning(f"Notion rejected bookmark append with HTTP {status}")
            raise RemoteRejectedError(status, _http_error_detail(e), _remote_message(e)) from e
        except httpx.RequestError as e:
            logger.warning(f"Bookmark append failed: {e}")
            raise SyncTransportError(e) from e

        logger.info(f"Appended bookmark {draft.url} to {creds.target_id}")
        if self.mode is TargetMode.DATABASE:
            return EntryRef(creds.target_id, page_id=result.get("id"), url=result.get("url"))
        return EntryRef(creds.target_id)


# =============================================================================
# Bookmark Session
# =============================================================================


class SessionState(Enum):
    UNCONFIGURED = "unconfigured"
    CONFIGURED = "configured"


class BookmarkSession:
    """One popup session: settings form plus the bookmark form.

    Unconfigured -> (save_settings with passing connection test) -> Configured
    Configured -> (add_bookmark, either outcome) -> Configured
    Configured -> (disconnect) -> Unconfigured
    """

    def __init__(self, repository: SettingsRepository, engine: SyncEngine):
        self.repository = repository
        self.engine = engine
        self.state = SessionState.UNCONFIGURED
        self.credentials: Optional[Credentials] = None
        self.draft = DraftCredentials()
        self.page: Optional[CurrentPage] = None
        self.page_error: Optional[str] = None
        self.opened = False
        self._open_lock = asyncio.Lock()

    async def ensure_open(self) -> None:
        """Open the session once, however many callers race to first use."""
        async with self._open_lock:
            if not self.opened:
                await self.open()

    async def open(self, page_source: Optional[PageSource] = None) -> None:
        """Load stored settings and the draft, and the current page if given."""
        self.credentials = await self.repository.get_credentials()
        self.state = SessionState.CONFIGURED if self.credentials else SessionState.UNCONFIGURED
        self.draft = await self.repository.get_draft()
        self.opened = True
        if page_source is not None:
            await self.load_page(page_source)

    async def load_page(self, page_source: PageSource) -> None:
        try:
            self.page = await page_source()
            self.page_error = None
        except TabUnavailableError as e:
            self.page = None
            self.page_error = str(e) or "Error getting URL"

    def edit_field(self, field_name: str, value: str, pasted: bool = False) -> None:
        """Record a keystroke or paste in a credential field."""
        self.repository.update_draft_field(field_name, value, pasted=pasted)
        setattr(self.draft, field_name, value)

    def settings_form(self) -> dict[str, str]:
        """Values to show in the settings inputs: draft over saved."""
        saved = self.credentials
        api_key = self.draft.api_key
        target_id = self.draft.target_id
        if api_key is None:
            api_key = saved.api_key if saved else ""
        if target_id is None:
            target_id = saved.target_id if saved else ""
        return {"api_key": api_key, "target_id": target_id}

    async def save_settings(
        self,
        api_key: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> str:
        """Validate and promote the entered credentials.

        Missing arguments come from the settings form. The draft is only
        cleared once the credentials are stored; a failed save keeps it.

        Returns:
            The target's title.

        Raises:
            ValueError: A field is blank or the target ID is unparseable.
            TargetConnectionError: The connection test failed.
            StorageError: Saving credentials or clearing the draft failed.
        """
        form = self.settings_form()
        api_key = (api_key if api_key is not None else form["api_key"]).strip()
        raw_target = (target_id if target_id is not None else form["target_id"]).strip()
        if not api_key or not raw_target:
            raise ValueError("Both API key and target ID are required")

        creds = Credentials(api_key=api_key, target_id=parse_target_id(raw_target))
        title = await self.engine.test_connection(creds)

        await self.repository.save_credentials(creds)
        self.credentials = creds
        self.state = SessionState.CONFIGURED

        await self.repository.clear_draft()
        self.draft = DraftCredentials()
        return title

    async def test_connection(self) -> str:
        if self.credentials is None:
            raise NotConfiguredError("No credentials saved")
        return await self.engine.test_connection(self.credentials)

    async def add_bookmark(
        self,
        title: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> EntryRef:
        """Append the current page. `title` defaults to the page's title."""
        if self.state is not SessionState.CONFIGURED or self.credentials is None:
            raise NotConfiguredError("Save your Notion settings first")
        if self.page is None:
            raise TabUnavailableError(self.page_error or "No current page")

        draft = BookmarkDraft(
            url=self.page.url,
            title=self.page.title if title is None else title,
            notes=notes,
        )
        return await self.engine.append_bookmark(self.credentials, draft)

    async def disconnect(self) -> None:
        await self.repository.clear_credentials()
        self.credentials = None
        self.state = SessionState.UNCONFIGURED

    async def close(self) -> None:
        await self.repository.aclose()


def static_page(url: str, title: Optional[str] = None) -> PageSource:
    """Page source for callers that already know the URL and title."""

    async def source() -> CurrentPage:
        if not url:
            raise TabUnavailableError("No URL found")
        return CurrentPage(url=url, title=title)

    return source


# =============================================================================
# Error Messages
# =============================================================================


def _error(code: str, message: str, hint: str | None = None) -> str:
    """Format error with optional hint.

    Args:
        code: Error code (e.g., INVALID_URL, CONNECTION_FAILED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "not_configured": "Call bookmark_save_settings with an API key and target first.",
    "unauthorized": "The API key is invalid or expired. Create one at https://www.notion.so/my-integrations",
    "not_found": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "storage": "Check that the state directory is writable.",
}


def _connection_hint(status: Optional[int]) -> Optional[str]:
    if status == 401:
        return HINTS["unauthorized"]
    if status in (403, 404):
        return HINTS["not_found"]
    return None


# =============================================================================
# MCP Server
# =============================================================================

_session: Optional[BookmarkSession] = None


async def _get_session() -> BookmarkSession:
    """Get the server's session, opening it on first use."""
    if _session is None:
        raise RuntimeError("Server not initialized. Run via the notion-bookmarks entry point.")
    await _session.ensure_open()
    return _session


@asynccontextmanager
async def server_lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Open the session before serving and flush pending drafts on exit."""
    session = await _get_session()
    try:
        yield
    finally:
        try:
            await session.close()
        except StorageError as e:
            logger.error(f"Could not save pending drafts on shutdown: {e.reason}")


mcp = FastMCP("notion-bookmarks", host="127.0.0.1", port=2053, lifespan=server_lifespan)


@mcp.tool()
async def bookmark_status() -> str:
    """Show whether Notion is configured and what would be bookmarked.

    Returns:
        State, target mode, target ID, unsaved draft fields and current page.
    """
    session = await _get_session()
    lines = [
        f"state: {session.state.value}",
        f"mode: {session.engine.mode.value}",
    ]
    if session.credentials:
        lines.append(f"target: {session.credentials.target_id}")
    draft_fields = sorted(
        set(session.draft.to_dict()) |
        {DRAFT_FIELDS[f] for f in session.repository.pending_fields}
    )
    if draft_fields:
        lines.append(f"draft: {', '.join(draft_fields)}")
    if session.page:
        lines.append(f"page: {session.page.url}")
    elif session.page_error:
        lines.append(f"page: {session.page_error}")
    return "\n".join(lines)


@mcp.tool()
async def bookmark_edit_setting(setting: str, value: str, pasted: bool = False) -> str:
    """Record an in-progress edit of a settings field.

    The value is kept as a draft until settings are saved, so it survives a
    restart without being confirmed.

    Args:
        setting: "api_key" or "target_id"
        value: Current field content
        pasted: True if the value came from a paste (persisted sooner)
    """
    session = await _get_session()
    try:
        session.edit_field(setting, value, pasted=pasted)
    except ValueError as e:
        return _error("UNKNOWN_FIELD", str(e), hint="Use api_key or target_id.")
    return f"draft {setting} updated"


@mcp.tool()
async def bookmark_save_settings(
    api_key: Optional[str] = None,
    target: Optional[str] = None,
) -> str:
    """Test and save Notion credentials.

    Args:
        api_key: Integration secret. Defaults to the drafted value.
        target: Page/database ID or Notion URL. Defaults to the drafted value.

    Returns:
        Confirmation with the target's title, or an error.
    """
    session = await _get_session()
    try:
        title = await session.save_settings(api_key, target)
    except ValueError as e:
        return _error("INVALID_SETTINGS", str(e))
    except TargetConnectionError as e:
        return _error("CONNECTION_FAILED", e.message, hint=_connection_hint(e.http_status))
    except StorageError as e:
        return _error("STORAGE_ERROR", e.reason, hint=HINTS["storage"])
    return f"connected to '{title}'"


@mcp.tool()
async def bookmark_test_connection() -> str:
    """Check that the saved credentials still reach the target."""
    session = await _get_session()
    try:
        title = await session.test_connection()
    except NotConfiguredError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])
    except TargetConnectionError as e:
        return _error("CONNECTION_FAILED", e.message, hint=_connection_hint(e.http_status))
    return f"connected to '{title}'"


@mcp.tool()
async def bookmark_add(
    url: str,
    title: Optional[str] = None,
    notes: Optional[str] = None,
) -> str:
    """Bookmark a web page in the configured Notion target.

    Args:
        url: The page URL (http or https).
        title: Optional title line.
        notes: Optional notes, added as written.

    Returns:
        Where the bookmark was added, or an error.
    """
    session = await _get_session()
    await session.load_page(static_page(url, title))
    try:
        ref = await session.add_bookmark(notes=notes)
    except NotConfiguredError as e:
        return _error("NOT_CONFIGURED", str(e), hint=HINTS["not_configured"])
    except TabUnavailableError as e:
        return _error("NO_PAGE", str(e))
    except InvalidUrlError as e:
        return _error("INVALID_URL", str(e), hint="Only http and https pages can be bookmarked.")
    except RemoteRejectedError as e:
        return _error("REMOTE_REJECTED", e.message, hint=_connection_hint(e.status))
    except SyncTransportError as e:
        return _error("TRANSPORT_ERROR", str(e))

    if ref.page_id:
        return f"added row {ref.page_id} to {ref.target_id}"
    return f"added bookmark to {ref.target_id}"


@mcp.tool()
async def bookmark_disconnect() -> str:
    """Forget the saved credentials."""
    session = await _get_session()
    try:
        await session.disconnect()
    except StorageError as e:
        return _error("STORAGE_ERROR", e.reason, hint=HINTS["storage"])
    return "disconnected"


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================


async def health_endpoint(request: Request) -> JSONResponse:
    """Health check endpoint for easy testing."""
    configured = False
    mode = None
    if _session is not None:
        configured = await _session.repository.get_credentials() is not None
        mode = _session.engine.mode.value

    return JSONResponse({
        "status": "ok",
        "configured": configured,
        "mode": mode,
    })


# =============================================================================
# Main Entry Point
# =============================================================================


def build_session(
    state_dir: Path,
    mode: TargetMode,
    columns: Optional[RowProperties] = None,
) -> BookmarkSession:
    """Wire stores, repository and engine for a state directory."""
    state_dir = Path(state_dir).expanduser()
    repository = SettingsRepository(
        JsonFileStore(state_dir / "settings.json"),
        draft_store=JsonFileStore(state_dir / "drafts.json"),
    )
    return BookmarkSession(repository, SyncEngine(mode=mode, columns=columns))


def main():
    """Run the Notion bookmarks MCP server.

    Usage:
        notion-bookmarks                       # stdio, page mode
        notion-bookmarks --mode database       # rows in a database
        notion-bookmarks --http                # HTTP on localhost:2053
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Bookmarks MCP Server")
    parser.add_argument(
        "--state-dir",
        default=str(DEFAULT_STATE_DIR),
        help="Directory for saved settings and drafts"
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in TargetMode],
        default=TargetMode.PAGE.value,
        help="Append to a page's blocks or add rows to a database"
    )
    parser.add_argument("--title-property", default="Name", help="Database title column")
    parser.add_argument("--url-property", default="URL", help="Database URL column")
    parser.add_argument("--notes-property", default="Notes", help="Database notes column")
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server instead of stdio"
    )
    parser.add_argument("--port", type=int, default=2053, help="HTTP port")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    global _session
    columns = RowProperties(
        title=args.title_property,
        url=args.url_property,
        notes=args.notes_property,
    )
    _session = build_session(Path(args.state_dir), TargetMode(args.mode), columns)
    logger.info(f"State directory: {Path(args.state_dir).expanduser()} ({args.mode} mode)")

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        app.add_route("/health", health_endpoint, methods=["GET"])

        logger.info(f"Starting Notion bookmarks server on http://127.0.0.1:{args.port}")
        uvicorn.run(app, host="127.0.0.1", port=args.port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
