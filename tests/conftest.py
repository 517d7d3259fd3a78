"""Shared pytest fixtures for the subtree detector tests."""

from __future__ import annotations

import logging
import os
import tempfile

import pytest

# Rotating log files must not land next to the sources during test runs.
os.environ.setdefault("SAMEDIRS_LOG_DIR", tempfile.mkdtemp(prefix="samedirs-logs-"))
os.environ.setdefault("SAMEDIRS_EXPORT_DIR", tempfile.mkdtemp(prefix="samedirs-exports-"))

from subtree_detector import SubtreeDuplicateDetector  # noqa: E402

# Attach the package handlers once, outside any per-test output capture.
SubtreeDuplicateDetector()


@pytest.fixture
def detector():
    logger = logging.getLogger("subtree_detector.tests")
    logger.setLevel(logging.DEBUG)
    return SubtreeDuplicateDetector(logger=logger)


@pytest.fixture
def make_tree():
    """Create files from a ``{relative path: content}`` mapping; ``None`` makes a directory."""

    def _make(root, layout):
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in layout.items():
            target = root / rel
            if content is None:
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, bytes):
                target.write_bytes(content)
            else:
                target.write_text(content)
        return root

    return _make
