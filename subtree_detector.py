#!/usr/bin/env python3
"""Duplicate file and directory subtree detector with structured NDJSON logging."""

from __future__ import annotations

import argparse
import csv
import hashlib
import json
import logging
import os
import stat
import struct
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, TextIO, Tuple, Union

MODULE_VERSION = "1.0.0"
DEFAULT_ENV = "dev"
DEFAULT_CHUNK_SIZE = 1024 * 1024

DIRECTORY_SIZE = -1
FAST_DIGEST_SIZE = 16
FILE_TAG = b"\x01"
DIRECTORY_TAG = b"\x02"

LOG_DIR_ENV = "SAMEDIRS_LOG_DIR"
LOG_LEVEL_ENV = "SAMEDIRS_LOG_LEVEL"
ENVIRONMENT_ENV = "SAMEDIRS_ENV"
DEFAULT_LOG_DIR = Path(__file__).resolve().parent / "logs"
GENERAL_LOG_FILENAME = "subtree-detector.log"
API_LOG_FILENAME = "subtree-detector.api.log"
GENERAL_TEXT_LOG_FILENAME = "subtree-detector.txt"
API_TEXT_LOG_FILENAME = "subtree-detector.api.txt"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 5
API_LOG_BACKUP_COUNT = 3
EXPORT_FORMATS = {"json", "csv"}


def _iso_utc(timestamp: float) -> str:
    """Return ISO-8601 UTC timestamp with Z suffix."""
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


class NDJSONFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        payload.setdefault("timestamp", _iso_utc(record.created))
        payload.setdefault("level", record.levelname)

        message = record.getMessage()
        if not payload.get("message"):
            payload["message"] = message

        payload.setdefault("event", getattr(record, "event", message))
        return json.dumps(payload, ensure_ascii=False, default=str)


class PlainTextFormatter(logging.Formatter):
    """Render log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        payload = getattr(record, "log_payload", {}).copy()
        timestamp = _iso_utc(record.created)
        level = record.levelname
        message = record.getMessage()
        event = payload.get("event") or getattr(record, "event", message)
        human_message = payload.get("message") or message
        extras = {k: v for k, v in payload.items() if k not in {"event", "message"}}
        extra_str = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        base = f"{timestamp} [{level}] {event}: {human_message}"
        return f"{base} | {extra_str}" if extra_str else base


class _ComponentFilter(logging.Filter):
    def __init__(self, *, component: str) -> None:
        super().__init__()
        self._component = component

    def filter(self, record: logging.LogRecord) -> bool:
        payload = getattr(record, "log_payload", {})
        return payload.get("component") == self._component


def _resolve_log_dir() -> Path:
    override = os.getenv(LOG_DIR_ENV)
    if override:
        candidate = Path(override).expanduser()
    else:
        candidate = DEFAULT_LOG_DIR
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        candidate = DEFAULT_LOG_DIR
        candidate.mkdir(parents=True, exist_ok=True)
    return candidate


def _resolve_log_level() -> int:
    name = os.getenv(LOG_LEVEL_ENV, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


class SubtreeDetectorError(Exception):
    """Base class for errors raised while scanning root trees."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class FilesystemError(SubtreeDetectorError):
    """A path could not be stat'ed or a directory could not be listed."""


class HashError(SubtreeDetectorError):
    """A strong fingerprint could not be computed for a node."""


@dataclass(frozen=True)
class Node:
    """One filesystem entry. Directories carry ``DIRECTORY_SIZE`` as size."""

    node_id: int
    path: str
    name: str
    size: int
    depth: int
    group: int
    children: Tuple[int, ...] = ()
    content_bytes: int = 0
    error: Optional[str] = None

    @property
    def is_dir(self) -> bool:
        return self.size == DIRECTORY_SIZE

    @property
    def is_empty(self) -> bool:
        # zero-byte file, or directory without any non-empty descendant
        return self.content_bytes == 0


class NodeArena:
    """Owns every node of one scan, addressed by integer identifiers."""

    def __init__(self) -> None:
        self._nodes: List[Node] = []

    def add(self, **fields: Any) -> Node:
        node = Node(node_id=len(self._nodes), **fields)
        self._nodes.append(node)
        return node

    def __getitem__(self, node_id: int) -> Node:
        return self._nodes[node_id]

    def __len__(self) -> int:
        return len(self._nodes)


def _fold_child(hasher: Any, name: str, digest: bytes) -> None:
    encoded = os.fsencode(name)
    hasher.update(struct.pack(">q", len(encoded)))
    hasher.update(encoded)
    hasher.update(digest)


class Fingerprinter:
    """Fast and strong fingerprints, memoized per node identifier."""

    def __init__(
        self,
        arena: NodeArena,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        *,
        on_hash_computed: Optional[Callable[[Node, bytes], None]] = None,
    ) -> None:
        self.arena = arena
        self.chunk_size = chunk_size
        self.on_hash_computed = on_hash_computed
        self._fast: Dict[int, bytes] = {}
        self._strong: Dict[int, Union[bytes, HashError]] = {}

    def fast(self, node: Node) -> bytes:
        """Size and child-name derived digest. Equal values are only candidates."""
        cached = self._fast.get(node.node_id)
        if cached is None:
            hasher = hashlib.blake2b(digest_size=FAST_DIGEST_SIZE)
            hasher.update(struct.pack(">q", node.size))
            for child_id in node.children:
                child = self.arena[child_id]
                _fold_child(hasher, child.name, self.fast(child))
            cached = self._fast[node.node_id] = hasher.digest()
        return cached

    def strong(self, node: Node) -> bytes:
        """SHA-512 of the content (files) or of the named child digests (directories).

        Raises ``HashError`` if the node or any descendant cannot be read. The
        failure is memoized like a success.
        """
        if node.node_id not in self._strong:
            self._fill_strong(node)
        cached = self._strong[node.node_id]
        if isinstance(cached, HashError):
            raise cached
        return cached

    def is_strong_cached(self, node_id: int) -> bool:
        return node_id in self._strong

    def _fill_strong(self, node: Node) -> None:
        # post-order over the part of the subtree not hashed yet
        stack: List[Tuple[Node, bool]] = [(node, False)]
        while stack:
            current, expanded = stack.pop()
            if current.node_id in self._strong:
                continue
            if current.is_dir and current.error is None and not expanded:
                stack.append((current, True))
                for child_id in reversed(current.children):
                    if child_id not in self._strong:
                        stack.append((self.arena[child_id], False))
                continue
            try:
                digest = self._compute_strong(current)
            except HashError as exc:
                self._strong[current.node_id] = exc
                continue
            self._strong[current.node_id] = digest
            if self.on_hash_computed is not None:
                self.on_hash_computed(current, digest)

    def _compute_strong(self, node: Node) -> bytes:
        if not node.is_dir:
            return FILE_TAG + self.hash_file(node.path)

        if node.error is not None:
            raise HashError(f"Directory was not listed: {node.error}", node.path)

        hasher = hashlib.sha512()
        for child_id in node.children:
            digest = self._strong[child_id]
            if isinstance(digest, HashError):
                raise HashError(f"Cannot hash {digest.path}", node.path) from digest
            _fold_child(hasher, self.arena[child_id].name, digest)
        return DIRECTORY_TAG + hasher.digest()

    def hash_file(self, path: Union[str, Path]) -> bytes:
        hasher = hashlib.sha512()
        try:
            with open(path, "rb") as handle:
                while chunk := handle.read(self.chunk_size):
                    hasher.update(chunk)
        except OSError as exc:
            raise HashError(f"Cannot read {path}: {exc.strerror or exc}", str(path)) from exc
        return hasher.digest()


class DepthIndex:
    """depth -> fast fingerprint -> bucket of node identifiers."""

    def __init__(self, arena: NodeArena, fingerprinter: Fingerprinter) -> None:
        self.arena = arena
        self.fingerprinter = fingerprinter
        self._levels: List[Dict[bytes, List[int]]] = []
        self._indexed: Set[int] = set()
        self._removed: Set[int] = set()

    def insert(self, node: Node) -> bool:
        if node.is_empty or node.node_id in self._removed:
            return False
        while len(self._levels) <= node.depth:
            self._levels.append({})
        key = self.fingerprinter.fast(node)
        self._levels[node.depth].setdefault(key, []).append(node.node_id)
        self._indexed.add(node.node_id)
        return True

    def remove(self, node_id: int) -> None:
        """Remove a node and its whole subtree. Repeated calls are no-ops."""
        pending = [node_id]
        visited: List[int] = []
        while pending:
            current = pending.pop()
            if current in self._removed:
                continue
            self._removed.add(current)
            visited.append(current)
            pending.extend(self.arena[current].children)

        # descendants before their ancestors
        for current in reversed(visited):
            if current not in self._indexed:
                continue
            node = self.arena[current]
            self._levels[node.depth][self.fingerprinter.fast(node)].remove(current)
            self._indexed.discard(current)

    @property
    def max_depth(self) -> int:
        return len(self._levels) - 1

    def buckets(self, depth: int) -> List[Tuple[bytes, List[int]]]:
        if depth >= len(self._levels):
            return []
        return list(self._levels[depth].items())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._indexed

    def __len__(self) -> int:
        return len(self._indexed)


@dataclass
class _PendingDirectory:
    dirpath: str
    name: str
    entries: List[Tuple[str, str, bool, int]]
    children: List[Node] = field(default_factory=list)


class TreeBuilder:
    """Walk one root and materialize its nodes into the arena and index."""

    def __init__(
        self,
        arena: NodeArena,
        fingerprinter: Fingerprinter,
        index: DepthIndex,
        *,
        on_list_error: Optional[Callable[[str, FilesystemError], None]] = None,
    ) -> None:
        self.arena = arena
        self.fingerprinter = fingerprinter
        self.index = index
        self.on_list_error = on_list_error

    def build(self, root: str, group: int) -> Node:
        """Build the tree for ``root``. Root stat/list failures raise ``FilesystemError``."""
        try:
            info = os.stat(root)
        except OSError as exc:
            raise FilesystemError(f"Cannot stat {root}: {exc.strerror or exc}", root) from exc

        name = os.path.basename(root.rstrip(os.sep)) or root
        if not stat.S_ISDIR(info.st_mode):
            return self._add_file(root, name, info.st_size, group)

        # post-order walk; each pending directory collects its children
        stack = [_PendingDirectory(root, name, self._list(root))]
        while True:
            top = stack[-1]
            if top.entries:
                path, entry_name, is_dir, size = top.entries.pop()
                if not is_dir:
                    top.children.append(self._add_file(path, entry_name, size, group))
                    continue
                try:
                    entries = self._list(path)
                except FilesystemError as exc:
                    if self.on_list_error is not None:
                        self.on_list_error(path, exc)
                    top.children.append(
                        self._add_directory(path, entry_name, group, [], error=str(exc))
                    )
                    continue
                stack.append(_PendingDirectory(path, entry_name, entries))
                continue

            stack.pop()
            node = self._add_directory(top.dirpath, top.name, group, top.children)
            if not stack:
                return node
            stack[-1].children.append(node)

    def _list(self, dirpath: str) -> List[Tuple[str, str, bool, int]]:
        """Entries of ``dirpath`` as ``(path, name, is_dir, size)``, in reverse name order."""
        try:
            with os.scandir(dirpath) as entries:
                listing = sorted(entries, key=lambda entry: entry.name, reverse=True)
        except OSError as exc:
            raise FilesystemError(f"Cannot list {dirpath}: {exc.strerror or exc}", dirpath) from exc

        # lstat every entry before descending, so a failure leaves no partial subtree
        stats: List[Tuple[str, str, bool, int]] = []
        for entry in listing:
            path = os.path.join(dirpath, entry.name)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                size = DIRECTORY_SIZE if is_dir else entry.stat(follow_symlinks=False).st_size
            except OSError as exc:
                raise FilesystemError(f"Cannot stat {path}: {exc.strerror or exc}", path) from exc
            stats.append((path, entry.name, is_dir, size))
        return stats

    def _add_file(self, path: str, name: str, size: int, group: int) -> Node:
        node = self.arena.add(
            path=path,
            name=name,
            size=size,
            depth=0,
            group=group,
            content_bytes=size,
        )
        self.fingerprinter.fast(node)
        self.index.insert(node)
        return node

    def _add_directory(
        self,
        dirpath: str,
        name: str,
        group: int,
        children: List[Node],
        error: Optional[str] = None,
    ) -> Node:
        node = self.arena.add(
            path=dirpath.rstrip(os.sep) + os.sep,
            name=name,
            size=DIRECTORY_SIZE,
            depth=1 + max((child.depth for child in children), default=0),
            group=group,
            children=tuple(child.node_id for child in children),
            content_bytes=sum(child.content_bytes for child in children),
            error=error,
        )
        self.fingerprinter.fast(node)
        self.index.insert(node)
        return node


def _spans_groups(nodes: Sequence[Node]) -> bool:
    return len({node.group for node in nodes}) >= 2


class DuplicateAnalyzer:
    """Confirm candidate buckets from the deepest level up, removing what is reported."""

    def __init__(
        self,
        arena: NodeArena,
        index: DepthIndex,
        fingerprinter: Fingerprinter,
        *,
        multi_root: bool,
        on_hash_error: Optional[Callable[[Node, HashError], None]] = None,
    ) -> None:
        self.arena = arena
        self.index = index
        self.fingerprinter = fingerprinter
        self.multi_root = multi_root
        self.on_hash_error = on_hash_error

    def analyze(self) -> Iterator[Tuple[int, bytes, List[Node]]]:
        """Yield ``(depth, strong fingerprint, members)`` per confirmed duplicate set.

        Members are removed from the index (with their subtrees) before the set
        is yielded, so shallower levels never see them again.
        """
        for depth in range(self.index.max_depth, -1, -1):
            for _, bucket in self.index.buckets(depth):
                members = [self.arena[node_id] for node_id in bucket]
                if len(members) < 2:
                    continue
                if self.multi_root and not _spans_groups(members):
                    continue

                for digest, partition in self._partition(members).items():
                    if len(partition) < 2:
                        continue
                    if self.multi_root and not _spans_groups(partition):
                        continue
                    for node in partition:
                        self.index.remove(node.node_id)
                    yield depth, digest, partition

    def _partition(self, members: List[Node]) -> Dict[bytes, List[Node]]:
        partitions: Dict[bytes, List[Node]] = {}
        for node in members:
            try:
                digest = self.fingerprinter.strong(node)
            except HashError as exc:
                if self.on_hash_error is not None:
                    self.on_hash_error(node, exc)
                continue
            partitions.setdefault(digest, []).append(node)
        return partitions


@dataclass
class DuplicateGroup:
    depth: int
    fingerprint: str
    paths: List[str]
    groups: List[int]
    size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "depth": self.depth,
            "fingerprint": self.fingerprint,
            "paths": list(self.paths),
            "groups": list(self.groups),
            "size_bytes": self.size_bytes,
        }


@dataclass
class ScanResult:
    scan_id: str
    roots: List[str]
    multi_root: bool
    groups: List[DuplicateGroup] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "roots": list(self.roots),
            "multi_root": self.multi_root,
            "groups": [group.to_dict() for group in self.groups],
            "stats": dict(self.stats),
        }


def _display_path(path: str, prefix: str) -> str:
    if prefix and path.startswith(prefix):
        return path[len(prefix):]
    return path


class SubtreeDuplicateDetector:
    """Detect duplicate files and directory subtrees across one or more roots."""

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        *,
        environment: Optional[str] = None,
        version: str = MODULE_VERSION,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

        self.chunk_size = chunk_size
        self.env = (environment or os.getenv(ENVIRONMENT_ENV, DEFAULT_ENV)).lower()
        self.version = version
        self.component = "library"
        self._last_scan_context: Optional[Dict[str, Any]] = None

        self.logger = logger or self._setup_logger()

    def _setup_logger(self) -> logging.Logger:
        logger = logging.getLogger("subtree_detector")
        logger.setLevel(_resolve_log_level())
        if not logger.handlers:
            log_dir = _resolve_log_dir()

            stream_handler = logging.StreamHandler()
            stream_handler.setFormatter(NDJSONFormatter())
            logger.addHandler(stream_handler)

            file_handler = RotatingFileHandler(
                log_dir / GENERAL_LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
                delay=True,
            )
            file_handler.setFormatter(NDJSONFormatter())
            logger.addHandler(file_handler)

            text_handler = RotatingFileHandler(
                log_dir / GENERAL_TEXT_LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
                delay=True,
            )
            text_handler.setFormatter(PlainTextFormatter())
            logger.addHandler(text_handler)

            api_file_handler = RotatingFileHandler(
                log_dir / API_LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=API_LOG_BACKUP_COUNT,
                encoding="utf-8",
                delay=True,
            )
            api_file_handler.setFormatter(NDJSONFormatter())
            api_file_handler.addFilter(_ComponentFilter(component="api"))
            logger.addHandler(api_file_handler)

            api_text_handler = RotatingFileHandler(
                log_dir / API_TEXT_LOG_FILENAME,
                maxBytes=LOG_MAX_BYTES,
                backupCount=API_LOG_BACKUP_COUNT,
                encoding="utf-8",
                delay=True,
            )
            api_text_handler.setFormatter(PlainTextFormatter())
            api_text_handler.addFilter(_ComponentFilter(component="api"))
            logger.addHandler(api_text_handler)

        return logger

    def _build_log_context(
        self,
        scan_id: str,
        roots: List[str],
        multi_root: bool,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "scan_id": scan_id,
            "component": self.component,
            "version": self.version,
            "env": self.env,
            "roots": list(roots),
            "multi_root": multi_root,
            "chunk_size": self.chunk_size,
        }
        if extra:
            payload.update(extra)
        return payload

    def _log_event(
        self,
        event: str,
        level: int,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> None:
        payload: Dict[str, Any] = {"event": event, "message": message}
        if context:
            payload.update(context)
        else:
            payload.setdefault("component", self.component)
            payload.setdefault("version", self.version)
            payload.setdefault("env", self.env)
            payload.setdefault("chunk_size", self.chunk_size)
        payload.update(fields)
        self.logger.log(level, message, extra={"log_payload": payload})

    def _resolve_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if context:
            return dict(context)
        if self._last_scan_context:
            return dict(self._last_scan_context)
        return {
            "scan_id": "unknown-scan",
            "component": self.component,
            "version": self.version,
            "env": self.env,
            "roots": [],
            "multi_root": False,
            "chunk_size": self.chunk_size,
        }

    @staticmethod
    def _duration_ms(start_time: float) -> int:
        return max(0, int((time.perf_counter() - start_time) * 1000))

    def _store_last_context(self, context: Dict[str, Any]) -> None:
        self._last_scan_context = dict(context)

    def scan(
        self,
        roots: Sequence[Union[str, Path]],
        *,
        warn_unreadable: bool = False,
    ) -> ScanResult:
        """Scan the given roots and return the duplicate groups in report order.

        One root reports every duplicate inside it, with paths relative to the
        root. Several roots report only sets spanning at least two roots, with
        the cleaned given paths. ``FilesystemError`` is raised if a root cannot
        be stat'ed or listed; nothing is reported in that case.
        """
        if not roots:
            raise ValueError("at least one root directory is required")

        cleaned = [os.path.normpath(os.fspath(root)) for root in roots]
        multi_root = len(cleaned) > 1
        scan_id = str(uuid.uuid4())
        context = self._build_log_context(scan_id, cleaned, multi_root)
        self._store_last_context(context)
        start = time.perf_counter()

        self._log_event("scan_started", logging.INFO, "Scan started", context)

        def on_list_error(dirpath: str, exc: FilesystemError) -> None:
            self._log_event(
                "directory_list_failed",
                logging.WARNING,
                "Directory could not be listed",
                context,
                directory=dirpath,
                exception_msg=str(exc),
            )

        def on_hash_error(node: Node, exc: HashError) -> None:
            if warn_unreadable:
                self._log_event(
                    "hash_failed",
                    logging.WARNING,
                    "Entry excluded: content could not be read",
                    context,
                    file=node.path,
                    exception_msg=str(exc),
                )
            elif self.logger.isEnabledFor(logging.DEBUG):
                self._log_event(
                    "hash_skipped",
                    logging.DEBUG,
                    "Entry excluded from confirmation",
                    context,
                    file=node.path,
                    exception_msg=str(exc),
                )

        def on_hash_computed(node: Node, digest: bytes) -> None:
            if self.logger.isEnabledFor(logging.DEBUG):
                self._log_event(
                    "hash_computed",
                    logging.DEBUG,
                    "Hash computed",
                    context,
                    file=node.path,
                    size=node.content_bytes,
                    hash_prefix=digest.hex()[:12],
                )

        arena = NodeArena()
        fingerprinter = Fingerprinter(arena, self.chunk_size, on_hash_computed=on_hash_computed)
        index = DepthIndex(arena, fingerprinter)
        builder = TreeBuilder(arena, fingerprinter, index, on_list_error=on_list_error)

        for group, root in enumerate(cleaned, start=1):
            entries_before = len(arena)
            try:
                node = builder.build(root, group)
            except FilesystemError as exc:
                self._log_event(
                    "scan_aborted",
                    logging.ERROR,
                    "Root could not be scanned",
                    context,
                    root=root,
                    group=group,
                    exception_msg=str(exc),
                    duration_ms=self._duration_ms(start),
                )
                raise
            self._log_event(
                "root_scanned",
                logging.INFO,
                "Root scanned",
                context,
                root=root,
                group=group,
                entries=len(arena) - entries_before,
                depth=node.depth,
            )

        prefix = "" if multi_root else cleaned[0].rstrip(os.sep) + os.sep
        analyzer = DuplicateAnalyzer(
            arena,
            index,
            fingerprinter,
            multi_root=multi_root,
            on_hash_error=on_hash_error,
        )

        groups: List[DuplicateGroup] = []
        for depth, digest, members in analyzer.analyze():
            duplicate = DuplicateGroup(
                depth=depth,
                fingerprint=digest.hex(),
                paths=[_display_path(node.path, prefix) for node in members],
                groups=[node.group for node in members],
                size_bytes=members[0].content_bytes,
            )
            groups.append(duplicate)
            if self.logger.isEnabledFor(logging.DEBUG):
                self._log_event(
                    "duplicate_group_found",
                    logging.DEBUG,
                    "Duplicate group found",
                    context,
                    depth=depth,
                    members=len(members),
                    hash_prefix=duplicate.fingerprint[:12],
                )

        stats = self.get_duplicate_stats(groups)
        self._log_event(
            "scan_finished",
            logging.INFO,
            "Scan finished",
            context,
            entries=len(arena),
            indexed=len(index),
            groups_found=stats["total_duplicate_groups"],
            total_duplicate_entries=stats["total_duplicate_entries"],
            wasted_size_bytes=stats["wasted_size_bytes"],
            duration_ms=self._duration_ms(start),
        )

        return ScanResult(
            scan_id=scan_id,
            roots=cleaned,
            multi_root=multi_root,
            groups=groups,
            stats=stats,
        )

    def export_results(
        self,
        result: ScanResult,
        output_file: Union[str, Path],
        format: str = "json",
        *,
        scan_context: Optional[Dict[str, Any]] = None,
    ) -> None:
        output_path = Path(output_file)
        format_lower = format.lower()
        start = time.perf_counter()
        context = self._resolve_context(scan_context)
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        try:
            if format_lower == "json":
                export_data = {"timestamp": timestamp, **result.to_dict()}
                output_path.write_text(
                    json.dumps(export_data, indent=2, ensure_ascii=False),
                    encoding="utf-8",
                )
            elif format_lower == "csv":
                with output_path.open("w", newline="", encoding="utf-8") as handle:
                    writer = csv.writer(handle)
                    writer.writerow(
                        ["Group", "Depth", "Fingerprint", "Path", "RootGroup", "SizeBytes", "Timestamp"]
                    )
                    for group_idx, group in enumerate(result.groups, start=1):
                        for path, root_group in zip(group.paths, group.groups):
                            writer.writerow(
                                [
                                    group_idx,
                                    group.depth,
                                    group.fingerprint,
                                    path,
                                    root_group,
                                    group.size_bytes,
                                    timestamp,
                                ]
                            )
            else:
                raise ValueError(f"format must be one of {sorted(EXPORT_FORMATS)}")

            bytes_written = output_path.stat().st_size
        except Exception as exc:
            self._log_event(
                "export_failed",
                logging.ERROR,
                "Export failed",
                context,
                format=format_lower,
                output_file=str(output_path),
                exception_type=exc.__class__.__name__,
                exception_msg=str(exc),
            )
            raise

        self._log_event(
            "export_completed",
            logging.INFO,
            "Export completed",
            context,
            format=format_lower,
            output_file=str(output_path),
            bytes_written=bytes_written,
            duration_ms=self._duration_ms(start),
        )

    @staticmethod
    def get_duplicate_stats(groups: Sequence[DuplicateGroup]) -> Dict[str, Any]:
        total_entries = sum(len(group.paths) for group in groups)
        total_groups = len(groups)
        total_size = sum(group.size_bytes * len(group.paths) for group in groups)
        wasted_size = sum(group.size_bytes * (len(group.paths) - 1) for group in groups)

        return {
            "total_duplicate_groups": total_groups,
            "total_duplicate_entries": total_entries,
            "wasted_entries": total_entries - total_groups,
            "total_size_bytes": total_size,
            "wasted_size_bytes": wasted_size,
            "wasted_size_mb": round(wasted_size / (1024 * 1024), 2),
        }


def write_report(result: ScanResult, stream: TextIO) -> None:
    """One path per line, each duplicate group followed by a blank line."""
    for group in result.groups:
        for path in group.paths:
            stream.write(f"{path}\n")
        stream.write("\n")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="samedirs",
        description="Find duplicate files and directory subtrees. With several "
        "directories, only duplicates spanning at least two of them are reported.",
    )
    p.add_argument("directories", nargs="+", help="Root directories to scan")
    p.add_argument(
        "--warn-unreadable",
        action="store_true",
        help="Log a warning for entries excluded because their content could not be read",
    )
    p.add_argument("--export", default=None, help="Also write the results to this file")
    p.add_argument("--format", default="json", choices=sorted(EXPORT_FORMATS), help="Export format")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    args = build_arg_parser().parse_args(argv)

    detector = SubtreeDuplicateDetector()
    try:
        result = detector.scan(args.directories, warn_unreadable=args.warn_unreadable)
    except FilesystemError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    write_report(result, sys.stdout)
    if args.export:
        detector.export_results(result, args.export, format=args.format)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
