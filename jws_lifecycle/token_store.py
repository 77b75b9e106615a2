"""
Durable round-trip of the active/passive token state.

Two logically independent records are kept: the active token and the passive token set.
A missing active token (or an empty passive set) deletes its record instead of writing a
sentinel. Failures are logged and reported through return values; nothing here raises to
the caller, so the running process keeps its in-memory state as the source of truth.
"""
import logging
import os
import tempfile
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from jws_lifecycle.database import ROLE_ACTIVE, ROLE_PASSIVE, StoredToken, create_session_factory, init_db
from jws_lifecycle.errors import CorruptRecordError, TransientIOError
from jws_lifecycle.models import TokenInfo, TokenSnapshot

logger = logging.getLogger(__name__)

ACTIVE_TOKEN_FILE = "active-token.properties"
PASSIVE_TOKENS_FILE = "passive-tokens.properties"
JWS_KEY = "jws"
CREATED_TIME_KEY = "created.time"
EXPIRES_TIME_KEY = "expires.time"
COUNT_KEY = "count"
PASSIVE_PREFIX = "token."


class TokenStore(Protocol):
    def save(self, snapshot: TokenSnapshot) -> bool: ...

    def load(self) -> TokenSnapshot: ...

    def clear(self) -> bool: ...


def _parse_timestamp(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _build_token(jws: str | None, created: str | None, expires: str | None) -> TokenInfo:
    """Rebuild a TokenInfo from stored text fields. Raises CorruptRecordError on any problem."""
    if not jws or not created or not expires:
        raise CorruptRecordError("missing jws, created.time or expires.time")
    try:
        return TokenInfo(jws, _parse_timestamp(created), _parse_timestamp(expires))
    except ValueError as e:
        raise CorruptRecordError(str(e)) from e


_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"}
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def escape_value(value: str) -> str:
    """Backslash-escape line breaks, tabs and backslashes; a leading space is escaped too."""
    escaped = "".join(_ESCAPES.get(ch, ch) for ch in value)
    if escaped.startswith(" "):
        escaped = "\\" + escaped
    return escaped


def unescape_value(value: str) -> str:
    out = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_UNESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def format_properties(values: Mapping[str, str], comment: str) -> str:
    lines = [f"# {comment}"]
    lines.extend(f"{key}={escape_value(value)}" for key, value in values.items())
    return "\n".join(lines) + "\n"


def parse_properties(text: str) -> dict[str, str]:
    """
    Parse key=value lines; blank lines and '#' comments are skipped, lines without '=' ignored.
    Values are taken verbatim after the first '=' and unescaped, never stripped.
    """
    values = {}
    for raw in text.split("\n"):
        stripped = raw.lstrip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        values[key.strip()] = unescape_value(value)
    return values


def _token_fields(token: TokenInfo, prefix: str = "") -> dict[str, str]:
    return {
        f"{prefix}{JWS_KEY}": token.token,
        f"{prefix}{CREATED_TIME_KEY}": token.created_at.isoformat(),
        f"{prefix}{EXPIRES_TIME_KEY}": token.expires_at.isoformat(),
    }


class FileTokenStore:
    """
    Properties-style persistence under one directory: active-token.properties and
    passive-tokens.properties, human-readable key=value lines. Writes are atomic
    (temp file + os.replace) so a crash never leaves a half-written record.
    """

    def __init__(self, directory: str | os.PathLike):
        self.directory = Path(directory)
        self.active_path = self.directory / ACTIVE_TOKEN_FILE
        self.passive_path = self.directory / PASSIVE_TOKENS_FILE
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Failed to create persistence directory %s: %s", self.directory, e)

    def save(self, snapshot: TokenSnapshot) -> bool:
        ok = True
        try:
            self._save_active(snapshot.active)
        except TransientIOError as e:
            logger.warning("Failed to save active token: %s", e)
            ok = False
        try:
            self._save_passive(snapshot.passive)
        except TransientIOError as e:
            logger.warning("Failed to save passive tokens: %s", e)
            ok = False
        return ok

    def load(self) -> TokenSnapshot:
        active = self._load_active()
        passive = self._load_passive()
        snapshot = TokenSnapshot(active=active, passive=tuple(passive))
        if snapshot.is_empty():
            logger.info("No persisted token data found in %s", self.directory)
        else:
            logger.info(
                "Loaded persisted token state (active: %s, passive: %d)",
                "yes" if active is not None else "none",
                len(passive),
            )
        return snapshot

    def clear(self) -> bool:
        ok = True
        for path in (self.active_path, self.passive_path):
            try:
                self._delete(path)
            except TransientIOError as e:
                logger.warning("Failed to clear %s: %s", path, e)
                ok = False
        if ok:
            logger.info("Cleared all token data in %s", self.directory)
        return ok

    def has_persisted_data(self) -> bool:
        return self.active_path.exists() or self.passive_path.exists()

    def _save_active(self, active: TokenInfo | None) -> None:
        if active is None:
            self._delete(self.active_path)
            return
        saved = datetime.now(timezone.utc).isoformat()
        self._write(self.active_path, format_properties(_token_fields(active), f"Active JWS token - saved {saved}"))

    def _save_passive(self, passive: tuple[TokenInfo, ...]) -> None:
        if not passive:
            self._delete(self.passive_path)
            return
        values = {COUNT_KEY: str(len(passive))}
        for i, token in enumerate(passive):
            values.update(_token_fields(token, f"{PASSIVE_PREFIX}{i}."))
        saved = datetime.now(timezone.utc).isoformat()
        self._write(self.passive_path, format_properties(values, f"Passive JWS tokens - saved {saved}"))

    def _load_active(self) -> TokenInfo | None:
        values = self._read(self.active_path)
        if values is None:
            return None
        try:
            return _build_token(values.get(JWS_KEY), values.get(CREATED_TIME_KEY), values.get(EXPIRES_TIME_KEY))
        except CorruptRecordError as e:
            logger.warning("Dropping corrupt active token record in %s: %s", self.active_path, e)
            return None

    def _load_passive(self) -> list[TokenInfo]:
        values = self._read(self.passive_path)
        if values is None:
            return []
        indices = set()
        for key in values:
            if not key.startswith(PASSIVE_PREFIX):
                continue
            index, _, _ = key[len(PASSIVE_PREFIX):].partition(".")
            if index.isdigit():
                indices.add(int(index))
        count = values.get(COUNT_KEY)
        if count is not None and count != str(len(indices)):
            logger.warning("Passive token count mismatch in %s: count=%s, records=%d", self.passive_path, count, len(indices))

        tokens = []
        for i in sorted(indices):
            prefix = f"{PASSIVE_PREFIX}{i}."
            try:
                tokens.append(
                    _build_token(
                        values.get(prefix + JWS_KEY),
                        values.get(prefix + CREATED_TIME_KEY),
                        values.get(prefix + EXPIRES_TIME_KEY),
                    )
                )
            except CorruptRecordError as e:
                logger.warning("Dropping corrupt passive token record %d in %s: %s", i, self.passive_path, e)
        return tokens

    def _read(self, path: Path) -> dict[str, str] | None:
        if not path.exists():
            return None
        try:
            return parse_properties(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read %s: %s", path, e)
            return None

    def _write(self, path: Path, content: str) -> None:
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=path.name, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
            raise TransientIOError(f"write {path}: {e}") from e

    def _delete(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise TransientIOError(f"delete {path}: {e}") from e


class SqlTokenStore:
    """
    Same two-record semantics over a SQLAlchemy table (SQLite by default).
    Each token is one row; a row with a missing or invalid column is dropped on load.
    If the database cannot be reached at startup, table creation is retried on each access.
    """

    def __init__(self, url: str):
        self.url = url
        self._engine, self._session_factory = create_session_factory(url)
        self._schema_ready = False
        try:
            self._ensure_schema()
        except TransientIOError as e:
            logger.warning("Token database not ready, will retry: %s", e)

    def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        try:
            init_db(self._engine)
        except SQLAlchemyError as e:
            raise TransientIOError(f"create tables in {self.url}: {e}") from e
        self._schema_ready = True

    def save(self, snapshot: TokenSnapshot) -> bool:
        ok = True
        try:
            self._replace_role(ROLE_ACTIVE, [snapshot.active] if snapshot.active is not None else [])
        except TransientIOError as e:
            logger.warning("Failed to save active token: %s", e)
            ok = False
        try:
            self._replace_role(ROLE_PASSIVE, list(snapshot.passive))
        except TransientIOError as e:
            logger.warning("Failed to save passive tokens: %s", e)
            ok = False
        return ok

    def load(self) -> TokenSnapshot:
        try:
            active_rows = self._rows(ROLE_ACTIVE)
        except TransientIOError as e:
            logger.warning("Failed to load active token: %s", e)
            active_rows = []
        try:
            passive_rows = self._rows(ROLE_PASSIVE)
        except TransientIOError as e:
            logger.warning("Failed to load passive tokens: %s", e)
            passive_rows = []

        active = None
        for row in active_rows:
            token = self._row_to_token(row)
            if token is not None:
                active = token
        passive = [t for t in (self._row_to_token(row) for row in passive_rows) if t is not None]
        logger.info(
            "Loaded persisted token state (active: %s, passive: %d)",
            "yes" if active is not None else "none",
            len(passive),
        )
        return TokenSnapshot(active=active, passive=tuple(passive))

    def clear(self) -> bool:
        try:
            self._ensure_schema()
            with self._session_factory() as db:
                db.execute(delete(StoredToken))
                db.commit()
        except (SQLAlchemyError, TransientIOError) as e:
            logger.warning("Failed to clear token data: %s", e)
            return False
        logger.info("Cleared all token data in %s", self.url)
        return True

    def has_persisted_data(self) -> bool:
        try:
            self._ensure_schema()
            with self._session_factory() as db:
                return db.execute(select(StoredToken.id).limit(1)).first() is not None
        except (SQLAlchemyError, TransientIOError) as e:
            logger.warning("Failed to query token data: %s", e)
            return False

    def _replace_role(self, role: str, tokens: list[TokenInfo]) -> None:
        self._ensure_schema()
        try:
            with self._session_factory() as db:
                db.execute(delete(StoredToken).where(StoredToken.role == role))
                for position, token in enumerate(tokens):
                    db.add(
                        StoredToken(
                            role=role,
                            position=position,
                            token=token.token,
                            created_at=token.created_at.astimezone(timezone.utc),
                            expires_at=token.expires_at.astimezone(timezone.utc),
                        )
                    )
                db.commit()
        except SQLAlchemyError as e:
            raise TransientIOError(f"save {role} tokens: {e}") from e

    def _rows(self, role: str) -> list[StoredToken]:
        self._ensure_schema()
        try:
            with self._session_factory() as db:
                return list(
                    db.scalars(
                        select(StoredToken).where(StoredToken.role == role).order_by(StoredToken.position)
                    )
                )
        except SQLAlchemyError as e:
            raise TransientIOError(f"load {role} tokens: {e}") from e

    def _row_to_token(self, row: StoredToken) -> TokenInfo | None:
        try:
            if row.token is None or row.created_at is None or row.expires_at is None:
                raise CorruptRecordError("missing token, created_at or expires_at")
            try:
                return TokenInfo(row.token, _as_utc(row.created_at), _as_utc(row.expires_at))
            except ValueError as e:
                raise CorruptRecordError(str(e)) from e
        except CorruptRecordError as e:
            logger.warning("Dropping corrupt %s token row id=%s: %s", row.role, row.id, e)
            return None


def _as_utc(dt: datetime) -> datetime:
    # SQLite hands datetimes back naive; they were written as UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def create_token_store(persistence_path: str, database_url: str | None = None) -> TokenStore:
    """SqlTokenStore when a database URL is configured, otherwise FileTokenStore under persistence_path."""
    if database_url:
        return SqlTokenStore(database_url)
    return FileTokenStore(persistence_path)
