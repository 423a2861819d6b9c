#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Paul Tiffany
# Project: unmork - Recover data from Mork databases

"""
unmork - Read legacy Mork database files and export their data.

Mork is the journal-style text database used by older Mozilla applications
(address books, history, mail summaries). A file is a snapshot of dictionaries
and tables followed by an append-only log of change groups, so it has to be
ingested in its entirety. unmork loads it into memory and prints a summary,
CSV or JSON.
"""

import argparse
import csv
import io
import json
import logging
import re
import sys
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import IO, Any, Iterator, NamedTuple, Optional, Union

# Project metadata
__version__ = "1.0.0"
__license__ = "MIT"
__format_docs__ = "https://developer.mozilla.org/en-US/docs/Mozilla/Tech/Mork"

log = logging.getLogger("unmork")

# --- Configuration ---
MORK_VERSION = "1.4"
HEADER_RE = re.compile(r'^//\s*<!-- <mdb:mork:z v="(.*)"/> -->')
ESCAPE = "\\"
MISSING = "??"

HEX = "HEX"  # Candidate shorthand for any single hexadecimal digit
HEX_DIGITS = tuple("0123456789ABCDEFabcdef")

DELETE_MARK = "-"
REF_MARK = "^"
SCOPE_SEP = ":"

ATOM_SCOPE = "a"
COLUMN_SCOPE = "c"
DEFAULT_DICT_SCOPE = ATOM_SCOPE
DEFAULT_TABLE_SCOPE = COLUMN_SCOPE

# Grammar markers
COMMENT = "//"
GROUP_OPEN = "@$${"
GROUP_ID_END = "{@"
DICT_OPEN, DICT_CLOSE = "<", ">"
TABLE_OPEN, TABLE_CLOSE = "{", "}"
ROW_OPEN, ROW_CLOSE = "[", "]"
CELL_OPEN, CELL_CLOSE = "(", ")"
ALIAS_SEP = "="
NEWLINES = ("\n", "\r")
WHITESPACE = (" ", "\t", "\n", "\r")
ID_DELIMITERS = WHITESPACE + (
    TABLE_OPEN,
    ROW_OPEN,
    CELL_OPEN,
    ALIAS_SEP,
    TABLE_CLOSE,
    ROW_CLOSE,
    CELL_CLOSE,
)

VERBOSITY_LEVELS = {0: logging.ERROR, 1: logging.INFO, 2: logging.DEBUG}

CSV_DELIMITERS = {"semicolon": ";", "comma": ",", "colon": ":", "tab": "\t"}
FORMATS = ("summary", "csv", "json")


# --- Errors ---


class MorkError(Exception):
    """Base exception for unmork operations."""


class MalformedHeaderError(MorkError):
    """The first line of the input is not a Mork header."""


class UnsupportedVersionError(MorkError):
    """The header announces a Mork version other than MORK_VERSION."""


class UnterminatedConstructError(MorkError):
    """A construct ran into the end of the file before its closing marker."""

    def __init__(self, construct: str):
        super().__init__(f"Missing {construct} terminator, found end of file instead")
        self.construct = construct


class NestedGroupError(MorkError):
    """A group started before the previous one committed or aborted."""


class OrphanedRowError(MorkError):
    """A row was defined outside any table, and no table holds it yet."""

    def __init__(self, row_id: str):
        super().__init__(f"Row {row_id} does not belong to any table")
        self.row_id = row_id


# --- Escape Codec ---


@lru_cache(maxsize=None)
def _escape_pattern(escape: str) -> "re.Pattern[bytes]":
    esc = re.escape(escape.encode("latin-1"))
    return re.compile(esc + rb"(.)|\$([0-9A-Fa-f]{2})", re.DOTALL)


def _unescape_match(match: "re.Match[bytes]") -> bytes:
    if match.group(1) is not None:
        return match.group(1)
    return bytes([int(match.group(2), 16)])


def unescape(text: str, escape: str = ESCAPE) -> bytes:
    """Decode `$XX` byte escapes and escaped literals into raw bytes.

    `text` carries one code point per source byte (latin-1), exactly as the
    tokenizer produces it. Escape pairs and byte escapes are consumed in a
    single left-to-right pass, so `$XX` preceded by an unescaped escape
    character stays literal. Multi-byte UTF-8 characters arrive as runs of
    byte escapes and are left for the caller to decode.
    """
    return _escape_pattern(escape).sub(_unescape_match, text.encode("latin-1"))


# --- Identifiers ---


def normalize_id(oid: str, default_scope: str) -> tuple[str, bool]:
    """Return (`local:scope` id, is_create) for a raw object id."""
    create = not oid.startswith(DELETE_MARK)
    if not create:
        oid = oid[len(DELETE_MARK) :]
    if SCOPE_SEP not in oid:
        oid = f"{oid}{SCOPE_SEP}{default_scope}"
    return oid, create


def split_id(oid: str) -> tuple[str, str]:
    """Split a qualified id into (local_id, scope)."""
    local, _, scope = oid.partition(SCOPE_SEP)
    return local, scope


def display_id(local_id: str) -> Union[int, str]:
    """Hex ids are shown in decimal; anything else is shown as-is."""
    try:
        return int(local_id, 16)
    except ValueError:
        return local_id


# --- Tokenizer ---


class Match(NamedTuple):
    """Text read before a boundary, and the boundary (None at end of stream)."""

    text: str
    token: Optional[str]

    @property
    def eof(self) -> bool:
        return self.token is None


@lru_cache(maxsize=256)
def _candidates(tokens: tuple[str, ...]) -> tuple[tuple[str, bytes], ...]:
    expanded = [t for t in tokens if t != HEX]
    if HEX in tokens:
        expanded.extend(HEX_DIGITS)
    # At a given end position the longest token starts leftmost, so it wins.
    ordered = sorted(dict.fromkeys(expanded), key=len, reverse=True)
    return tuple((t, t.encode("latin-1")) for t in ordered)


class Tokenizer:
    """Byte-at-a-time reader over a seekable binary stream.

    `read_until` stops at the first candidate token whose first byte is not
    preceded by an unescaped escape character. The text before it is trimmed
    and stripped of line continuations; it stays escaped otherwise.
    """

    def __init__(self, stream: IO[bytes], escape: str = ESCAPE):
        if len(escape) != 1:
            raise ValueError(f"Escape must be a single character, got {escape!r}")
        self.stream = stream
        self.escape = escape
        self._esc = escape.encode("latin-1")
        self._continuations = (self._esc + b"\r", self._esc + b"\n", b"\n", b"\r")

    def tell(self) -> int:
        return self.stream.tell()

    def seek(self, position: int) -> None:
        self.stream.seek(position)

    def read_until(self, *tokens: str) -> Match:
        """Read until one of `tokens` (or end of stream) and return a Match."""
        candidates = _candidates(tokens)
        buf = bytearray()
        while True:
            byte = self.stream.read(1)
            if not byte:
                return Match(self._clean(buf), None)
            buf += byte
            for token, raw in candidates:
                start = len(buf) - len(raw)
                if start >= 0 and buf.endswith(raw) and not self._escaped(buf, start):
                    return Match(self._clean(buf[:start]), token)

    def _escaped(self, buf: bytearray, position: int) -> bool:
        run = 0
        while position > 0 and buf[position - 1] == self._esc[0]:
            run += 1
            position -= 1
        return run % 2 == 1

    def _clean(self, buf: Union[bytes, bytearray]) -> str:
        text = bytes(buf).strip()
        for seq in self._continuations:
            text = text.replace(seq, b"")
        return text.decode("latin-1")


# --- Data Model ---


@dataclass
class Row:
    """A row: insertion-ordered column id -> literal or ^reference value."""

    id: str
    cells: dict[str, str] = field(default_factory=dict)

    @property
    def local_id(self) -> str:
        return split_id(self.id)[0]

    @property
    def scope(self) -> str:
        return split_id(self.id)[1]


@dataclass
class Table:
    """A table: insertion-ordered qualified row id -> Row."""

    id: str
    rows: dict[str, Row] = field(default_factory=dict)

    @property
    def local_id(self) -> str:
        return split_id(self.id)[0]

    @property
    def scope(self) -> str:
        return split_id(self.id)[1]

    def matches(self, wanted: Optional[str]) -> bool:
        """Match a table filter given as a local hex id or a qualified id."""
        if wanted is None:
            return True
        if SCOPE_SEP in wanted:
            return self.id.lower() == wanted.lower()
        return self.local_id.lower() == wanted.lower()

    def select_rows(self, filter_scope: bool = True) -> list[Row]:
        if not filter_scope:
            return list(self.rows.values())
        return [row for row in self.rows.values() if row.scope == self.scope]


@dataclass
class MorkDatabase:
    """Tables and the shared dictionary produced by one ingestion run."""

    tables: dict[str, Table] = field(default_factory=dict)
    dictionary: dict[str, str] = field(default_factory=dict)
    escape: str = ESCAPE

    def table(self, table_id: str) -> Table:
        """Return the table with `table_id`, creating it on first sight."""
        table = self.tables.get(table_id)
        if table is None:
            log.debug("Creating new table with id %s", table_id)
            table = self.tables[table_id] = Table(table_id)
        return table

    def find_table(self, row_id: str) -> Optional[Table]:
        for table in self.tables.values():
            if row_id in table.rows:
                return table
        return None

    def find_row_by_local_id(self, local_id: str) -> Optional[tuple[Table, Row]]:
        for table in self.tables.values():
            for row in table.rows.values():
                if row.local_id == local_id:
                    return table, row
        return None

    def attach_row(self, table: Table, row_id: str) -> Row:
        """Make `row_id` belong to `table`, moving it from its current table."""
        row = table.rows.get(row_id)
        if row is not None:
            return row
        owner = self.find_table(row_id)
        if owner is not None:
            log.debug("Moving row %s from table %s to %s", row_id, owner.id, table.id)
            row = owner.rows.pop(row_id)
        else:
            row = Row(row_id)
        table.rows[row_id] = row
        return row

    def lookup(self, value: str) -> str:
        """Resolve a literal or ^reference value to text."""
        if value.startswith(REF_MARK):
            key = value[len(REF_MARK) :]
            if SCOPE_SEP not in key:
                key = f"{key}{SCOPE_SEP}{ATOM_SCOPE}"
            raw = self.dictionary.get(key)
            if raw is None:
                log.debug("Dictionary key %s not found", key)
                return MISSING
            value = raw
        return unescape(value, self.escape).decode("utf-8", errors="replace")

    def column_name(self, column: str) -> str:
        if column.startswith(REF_MARK):
            return self.lookup(column)
        return self.lookup(split_id(column)[0])

    def scope_name(self, scope: str) -> str:
        """Referenced scopes name a column-dictionary entry; literal ones name themselves."""
        if scope.startswith(REF_MARK):
            return self.lookup(f"{scope}{SCOPE_SEP}{COLUMN_SCOPE}")
        return self.lookup(scope)

    def select(self, table_id: Optional[str] = None) -> Iterator[Table]:
        return (table for table in self.tables.values() if table.matches(table_id))


# --- Grammar Parser ---


@dataclass
class ParseContext:
    """Ambient scopes. Tables and rows parse with their own copy."""

    dict_scope: str = DEFAULT_DICT_SCOPE
    table_scope: Optional[str] = None
    row_scope: Optional[str] = None


class GroupOutcome(Enum):
    COMMITTED = "committed"
    ABORTED = "aborted"
    IMPLICIT_ABORT = "implicit abort"
    TRUNCATED = "truncated"


class MorkParser:
    """Recursive-descent parser building a MorkDatabase from a Mork stream."""

    def __init__(self, stream: IO[bytes], escape: str = ESCAPE, strict: bool = False):
        self.tokens = Tokenizer(stream, escape)
        self.strict = strict
        self.db = MorkDatabase(escape=escape)
        self.context = ParseContext()
        self.version: Optional[str] = None

    def parse(self) -> MorkDatabase:
        """Ingest the whole stream and return the populated database."""
        self._parse_header()
        self._parse_content(self.context)
        log.info(
            "Parsed %d table(s) and %d dictionary entries",
            len(self.db.tables),
            len(self.db.dictionary),
        )
        return self.db

    def _irregular(self, error: MorkError) -> None:
        if self.strict:
            raise error
        log.warning("%s", error)

    def _read(self, *tokens: str) -> Match:
        return self.tokens.read_until(*tokens)

    def _parse_header(self) -> None:
        header = self._read(*NEWLINES).text
        match = HEADER_RE.match(header)
        if not match:
            raise MalformedHeaderError(f"Incorrect file header: {header!r}")
        if match.group(1) != MORK_VERSION:
            raise UnsupportedVersionError(f"Wrong Mork version: {match.group(1)}")
        self.version = match.group(1)
        log.info("Detected Mork version %s", self.version)

    def _parse_content(self, ctx: ParseContext, terminator: Optional[str] = None) -> bool:
        """Parse top-level content up to `terminator`; False if the file ended first.

        Without a terminator this is the file body, where groups may start. With
        one it is the replay of a committed group, which ends at its commit marker.
        """
        handlers = {
            COMMENT: self._parse_comment,
            DICT_OPEN: self._parse_dict,
            TABLE_OPEN: self._parse_table,
            ROW_OPEN: self._parse_row,
            CELL_OPEN: self._parse_loose_cell,
        }
        boundary = terminator if terminator is not None else GROUP_OPEN
        candidates = (boundary,) + tuple(handlers)
        while True:
            token = self._read(*candidates).token
            if token is None:
                log.debug("Found end of file")
                return False
            if token == terminator:
                return True
            if token == GROUP_OPEN:
                self._parse_group(ctx)
            else:
                handlers[token](ctx)

    def _parse_comment(self, ctx: ParseContext) -> None:
        log.info("Comment: %s", self._read(*NEWLINES).text)

    # Dictionaries

    def _parse_dict(self, ctx: ParseContext) -> None:
        log.debug("Found DICT")
        while True:
            token = self._read(DICT_OPEN, CELL_OPEN, COMMENT, DICT_CLOSE).token
            if token is None:
                self._irregular(UnterminatedConstructError("dict"))
                return
            if token == DICT_CLOSE:
                break
            if token == DICT_OPEN:
                self._parse_metadict(ctx)
            elif token == CELL_OPEN:
                self._parse_alias(ctx)
            else:
                self._parse_comment(ctx)
        ctx.dict_scope = DEFAULT_DICT_SCOPE
        log.debug("Closing DICT")

    def _parse_metadict(self, ctx: ParseContext) -> None:
        while True:
            token = self._read(CELL_OPEN, DICT_CLOSE).token
            if token is None:
                self._irregular(UnterminatedConstructError("metadict"))
                return
            if token == DICT_CLOSE:
                return
            column, value = self._read_cell()
            if column == ATOM_SCOPE:
                ctx.dict_scope = value
                log.debug("Dictionary scope set to %s", value)
            else:
                log.info("Unhandled metadict cell %s=%s", column, value)

    def _parse_alias(self, ctx: ParseContext) -> None:
        key = self._read(ALIAS_SEP)
        value = self._read(CELL_CLOSE)
        if key.eof or value.eof:
            self._irregular(UnterminatedConstructError("alias"))
            return
        alias = key.text
        if SCOPE_SEP not in alias:
            alias = f"{alias}{SCOPE_SEP}{ctx.dict_scope}"
        self.db.dictionary[alias] = value.text
        log.debug("Alias %s set to %s", alias, value.text)

    # Cells

    def _read_cell(self) -> tuple[str, str]:
        """Read `col=value)` or `col^ref)` after an opening parenthesis.

        Either side may be a ^reference; the marker is kept on the returned text.
        """
        head = self._read(REF_MARK, ALIAS_SEP)
        column, sep = head.text, head.token
        if sep == REF_MARK and not column:
            head = self._read(REF_MARK, ALIAS_SEP)
            column, sep = REF_MARK + head.text, head.token
        slot = self._read(CELL_CLOSE)
        value = REF_MARK + slot.text if sep == REF_MARK else slot.text
        if sep is None or slot.eof:
            self._irregular(UnterminatedConstructError("cell"))
        return column, value

    def _assign(self, table: Optional[Table], row_id: str, column: str, value: str) -> None:
        if not value:
            return
        column, _ = normalize_id(column, COLUMN_SCOPE)
        if value.startswith(REF_MARK):
            value, _ = normalize_id(value, ATOM_SCOPE)
        if table is None:
            log.debug("Dropping cell %s of unattached row %s", column, row_id)
            return
        log.debug("Setting %s to %s", column, value)
        table.rows.setdefault(row_id, Row(row_id)).cells[column] = value

    def _parse_loose_cell(self, ctx: ParseContext) -> None:
        column, value = self._read_cell()
        if column == ATOM_SCOPE and value:
            ctx.dict_scope = value
            log.debug("Dictionary scope set to %s", value)
        else:
            log.debug("Dropping cell %s outside of any row", column)

    # Tables

    def _read_id(self, first: str) -> tuple[str, Optional[str]]:
        """Finish an id whose first character was already consumed.

        Returns the id and the structural delimiter that ended it, if any.
        """
        rest = self._read(*ID_DELIMITERS)
        delimiter = None if rest.token in WHITESPACE else rest.token
        return first + rest.text, delimiter

    def _parse_table(self, ctx: ParseContext) -> None:
        start = self._read(HEX)
        if start.eof:
            self._irregular(UnterminatedConstructError("table"))
            return
        raw_id, pending = self._read_id(start.token)
        table = self.db.table(normalize_id(raw_id, DEFAULT_TABLE_SCOPE)[0])
        ctx = replace(ctx, table_scope=table.scope, row_scope=None)
        log.debug("Table id is %s", table.id)

        while True:
            token = pending or self._read(
                COMMENT, DICT_OPEN, TABLE_OPEN, ROW_OPEN, TABLE_CLOSE, DELETE_MARK, HEX
            ).token
            pending = None
            if token is None:
                self._irregular(UnterminatedConstructError("table"))
                return
            if token == TABLE_CLOSE:
                log.debug("Closing TABLE with id %s", table.id)
                return
            if token == COMMENT:
                self._parse_comment(ctx)
            elif token == DICT_OPEN:
                self._parse_dict(ctx)
            elif token == TABLE_OPEN:
                self._parse_metatable(ctx)
            elif token == ROW_OPEN:
                self._parse_row(ctx, table)
            elif token in ID_DELIMITERS:
                log.debug("Ignoring stray %r in table %s", token, table.id)
            else:
                raw_id, pending = self._read_id(token)
                self._reference_row(ctx, table, raw_id)

    def _reference_row(self, ctx: ParseContext, table: Table, raw_id: str) -> None:
        row_id, create = normalize_id(raw_id, ctx.table_scope or DEFAULT_TABLE_SCOPE)
        if not split_id(row_id)[0]:
            return
        if create:
            self.db.attach_row(table, row_id)
        elif table.rows.pop(row_id, None) is not None:
            log.debug("Removed row %s from table %s", row_id, table.id)

    def _parse_metatable(self, ctx: ParseContext) -> None:
        # Table metadata means something to the writing application only.
        while True:
            token = self._read(CELL_OPEN, TABLE_CLOSE).token
            if token is None:
                self._irregular(UnterminatedConstructError("metatable"))
                return
            if token == TABLE_CLOSE:
                return
            column, value = self._read_cell()
            log.debug("Metatable %s is %s", column, value)

    # Rows

    def _resolve_row(self, ctx: ParseContext, raw_id: str) -> tuple[Optional[Table], str, bool]:
        row_id, create = normalize_id(raw_id, ctx.table_scope or DEFAULT_TABLE_SCOPE)
        table = self.db.find_table(row_id)
        if table is None and ctx.table_scope is None and SCOPE_SEP not in raw_id:
            found = self.db.find_row_by_local_id(split_id(row_id)[0])
            if found is not None:
                table, row = found
                row_id = row.id
        return table, row_id, create

    def _parse_row(self, ctx: ParseContext, table: Optional[Table] = None) -> None:
        head = self._read(ROW_OPEN, CELL_OPEN, ROW_CLOSE)
        if table is None:
            table, row_id, create = self._resolve_row(ctx, head.text)
        else:
            row_id, create = normalize_id(head.text, ctx.table_scope or DEFAULT_TABLE_SCOPE)
        ctx = replace(ctx, row_scope=split_id(row_id)[1])

        if not split_id(row_id)[0]:
            log.debug("Ignoring row without an id")
            table = None
        elif create:
            if table is None:
                self._irregular(OrphanedRowError(row_id))
            elif row_id not in table.rows:
                log.debug("Adding row %s to table %s", row_id, table.id)
                self.db.attach_row(table, row_id)
        elif table is not None and table.rows.pop(row_id, None) is not None:
            log.debug("Deleting row %s", row_id)

        token = head.token
        while token != ROW_CLOSE:
            if token is None:
                self._irregular(UnterminatedConstructError("row"))
                return
            if token == ROW_OPEN:
                self._parse_metarow(ctx)
            else:
                column, value = self._read_cell()
                self._assign(table, row_id, column, value)
            token = self._read(ROW_OPEN, CELL_OPEN, ROW_CLOSE).token
        log.debug("Closing ROW %s", row_id)

    def _parse_metarow(self, ctx: ParseContext) -> None:
        while True:
            token = self._read(CELL_OPEN, ROW_CLOSE).token
            if token is None:
                self._irregular(UnterminatedConstructError("metarow"))
                return
            if token == ROW_CLOSE:
                return
            column, value = self._read_cell()
            log.debug("Metarow %s in scope %s is %s", column, ctx.row_scope, value)

    # Groups

    def _parse_group(self, ctx: ParseContext) -> GroupOutcome:
        """Scan a group for its outcome, then replay it only if it committed."""
        head = self._read(GROUP_ID_END)
        if head.eof:
            self._irregular(UnterminatedConstructError("group"))
            return GroupOutcome.TRUNCATED
        group_id = head.text
        commit = f"@$$}}{group_id}}}@"
        abort = f"@$$}}~abort~{group_id}}}@"
        start = self.tokens.tell()
        log.info("Found group %s", group_id)

        token = self._read(commit, abort, GROUP_OPEN).token
        if token == commit:
            log.debug("Group %s commits, replaying", group_id)
            self.tokens.seek(start)
            if not self._parse_content(ctx, commit):
                self._irregular(UnterminatedConstructError("group"))
            return GroupOutcome.COMMITTED
        if token == abort:
            log.debug("Group %s aborts", group_id)
            return GroupOutcome.ABORTED
        if token == GROUP_OPEN:
            if self.strict:
                raise NestedGroupError(f"Group {group_id} contains a nested group")
            log.warning("Group %s is implicitly aborted by a nested group", group_id)
            self.tokens.seek(self.tokens.tell() - len(GROUP_OPEN.encode("latin-1")))
            return GroupOutcome.IMPLICIT_ABORT
        self._irregular(UnterminatedConstructError("group"))
        return GroupOutcome.TRUNCATED


def ingest(stream: IO[bytes], escape: str = ESCAPE, strict: bool = False) -> MorkDatabase:
    """Parse an open, seekable binary stream into a MorkDatabase."""
    return MorkParser(stream, escape=escape, strict=strict).parse()


def ingest_file(path: Path, escape: str = ESCAPE, strict: bool = False) -> MorkDatabase:
    """Open and parse a Mork file."""
    try:
        stream = path.open("rb")
    except OSError as e:
        raise MorkError(f"Unable to open file {path}: {e}") from e
    with stream:
        return ingest(stream, escape=escape, strict=strict)


# --- Output Projections ---


@dataclass
class ExportOptions:
    table_id: Optional[str] = None
    filter_scope: bool = True
    include_scope: bool = False


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" + ("" if count == 1 else "s")


def _sorted_columns(db: MorkDatabase, columns: dict[str, None]) -> list[tuple[str, str]]:
    named = [(column, db.column_name(column)) for column in columns]
    return sorted(named, key=lambda item: item[1].lower())


def render_summary(db: MorkDatabase, options: ExportOptions) -> str:
    """Describe tables, row scopes and fields in human-readable form."""
    lines: list[str] = []
    scopes: dict[str, None] = {}
    for table in db.select(options.table_id):
        table_scope = db.scope_name(table.scope)
        scopes[table_scope] = None
        lines.append(
            f"Table {table.local_id} in scope {table_scope} has {_plural(len(table.rows), 'row')}"
        )
        row_scopes: dict[str, int] = {}
        columns: dict[str, None] = {}
        for row in table.rows.values():
            name = db.scope_name(row.scope)
            scopes[name] = None
            row_scopes[name] = row_scopes.get(name, 0) + 1
            columns.update(dict.fromkeys(row.cells))
        for name, count in row_scopes.items():
            lines.append(f"\t{_plural(count, 'row')} in scope {name}")
        fields = _sorted_columns(db, columns)
        lines.append(f"Table {table.local_id} has {_plural(len(fields), 'field')}")
        lines.extend(f"\t{name}" for _, name in fields)
        lines.append("")
    lines.append(f"Found {_plural(len(scopes), 'scope')}:")
    lines.extend(f"\t{name}" for name in scopes)
    return "\n".join(lines) + "\n"


def _flatten(text: str) -> str:
    return text.replace("\r", " ").replace("\n", " ")


def render_csv(db: MorkDatabase, options: ExportOptions, delimiter: str = ";") -> str:
    """Render selected rows as fully quoted CSV with one column per field."""
    selected = [
        (table, table.select_rows(options.filter_scope)) for table in db.select(options.table_id)
    ]
    columns: dict[str, None] = {}
    for _, rows in selected:
        for row in rows:
            columns.update(dict.fromkeys(row.cells))
    fields = _sorted_columns(db, columns)

    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, quoting=csv.QUOTE_ALL, lineterminator="\n")
    header = ["Table id"]
    if options.include_scope:
        header.append("Table scope")
    header.append("Row id")
    if options.include_scope:
        header.append("Row scope")
    writer.writerow(header + [_flatten(name) for _, name in fields])

    for table, rows in selected:
        for row in rows:
            record: list[Any] = [display_id(table.local_id)]
            if options.include_scope:
                record.append(db.scope_name(table.scope))
            record.append(display_id(row.local_id))
            if options.include_scope:
                record.append(db.scope_name(row.scope))
            for column, _ in fields:
                value = row.cells.get(column)
                record.append("" if value is None else _flatten(db.lookup(value)))
            writer.writerow(record)
    return buffer.getvalue()


def build_json(db: MorkDatabase, options: ExportOptions) -> dict[str, Any]:
    """Nest selected rows as {table id: {row id: {field: value}}}."""
    data: dict[str, Any] = {}
    for table in db.select(options.table_id):
        table_key = str(display_id(table.local_id))
        if options.include_scope:
            table_key += f"{SCOPE_SEP}{db.scope_name(table.scope)}"
        rows = data.setdefault(table_key, {})
        for row in table.select_rows(options.filter_scope):
            row_key = str(display_id(row.local_id))
            if options.include_scope:
                row_key += f"{SCOPE_SEP}{db.scope_name(row.scope)}"
            rows[row_key] = {
                db.column_name(column): db.lookup(value) for column, value in row.cells.items()
            }
    return data


def render_json(db: MorkDatabase, options: ExportOptions, pretty: bool = False) -> str:
    text = json.dumps(build_json(db, options), indent=2 if pretty else None, ensure_ascii=False)
    return text + "\n"


def write_output(path: Optional[Path], content: str) -> None:
    """Write rendered output to `path`, or to stdout when no path is given."""
    if path is None:
        sys.stdout.write(content)
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except (OSError, PermissionError) as e:
        raise MorkError(f"Error writing {path}: {e}") from e


# --- CLI and Main Execution ---


def configure_logging(verbosity: int) -> None:
    """Send unmork diagnostics to stderr at the level chosen by -v flags."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.handlers[:] = [handler]
    log.setLevel(VERBOSITY_LEVELS[min(max(verbosity, 0), 2)])


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Parse a Mork database file and print its data",
        epilog=f"More on the Mork format: {__format_docs__}",
    )
    parser.add_argument("file", nargs="?", help="Mork file to read")
    parser.add_argument("-o", "--out", help="Write output to this file instead of stdout")
    parser.add_argument(
        "-f", "--format", choices=FORMATS, default="summary", help="Output format"
    )
    parser.add_argument(
        "-C", dest="format", action="store_const", const="csv", help="Same as --format csv"
    )
    parser.add_argument(
        "-J", dest="format", action="store_const", const="json", help="Same as --format json"
    )
    parser.add_argument(
        "-d",
        "--delimiter",
        choices=list(CSV_DELIMITERS),
        default="semicolon",
        help="CSV delimiter (default: semicolon)",
    )
    parser.add_argument("-p", "--pretty", action="store_true", help="Indent JSON output")
    parser.add_argument("-t", "--table", help="Export only the table with this id")
    parser.add_argument(
        "-n",
        "--no-filter",
        dest="filter_scope",
        action="store_false",
        help="Also export rows whose scope differs from their table's",
    )
    parser.add_argument(
        "-P", "--include-scope", action="store_true", help="Print scope names with ids"
    )
    parser.add_argument(
        "-s", "--strict", action="store_true", help="Stop at the first syntax irregularity"
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0, help="Verbose output (-vv for more)"
    )
    parser.add_argument("--escape", default=ESCAPE, help="Escape character (default: backslash)")
    parser.add_argument("--version", action="version", version=f"unmork {__version__}")
    parser.add_argument("--about", action="store_true", help="Show project info and exit")
    return parser


def render(db: MorkDatabase, args: argparse.Namespace) -> str:
    """Render the database in the format selected on the command line."""
    options = ExportOptions(
        table_id=args.table, filter_scope=args.filter_scope, include_scope=args.include_scope
    )
    if args.format == "csv":
        return render_csv(db, options, CSV_DELIMITERS[args.delimiter])
    if args.format == "json":
        return render_json(db, options, pretty=args.pretty)
    return render_summary(db, options)


def main() -> int:  # noqa: PLR0911
    """Run the main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.about:
        print(f"unmork {__version__} ({__license__})\nMork format: {__format_docs__}")
        return 0

    configure_logging(args.verbose)
    try:
        if not args.file:
            print("Error: no Mork file given", file=sys.stderr)
            return 1
        path = Path(args.file)
        if not path.is_file():
            print(f"Error: '{args.file}' is not a file", file=sys.stderr)
            return 1

        db = ingest_file(path, escape=args.escape, strict=args.strict)
        write_output(Path(args.out) if args.out else None, render(db, args))
        return 0

    except MorkError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nCancelled by user", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def cli_entrypoint() -> None:
    """Console entry point (kept tiny so tests can patch sys.exit)."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entrypoint()
