"""Pytest configuration.

The application code lives in the top-level `mailstore/` package. Depending
on how pytest is invoked, the repository root may not be on `sys.path`, so
it is added explicitly during collection.
"""

from __future__ import annotations

import sys
from pathlib import Path

import mongomock
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mailstore.modules.attachment_spooler import AttachmentSpooler  # noqa: E402


@pytest.fixture
def attachments_dir(tmp_path):
    path = tmp_path / "attachments"
    path.mkdir()
    return path


@pytest.fixture
def temp_dir(tmp_path):
    path = tmp_path / "spool"
    path.mkdir()
    return path


@pytest.fixture
def spooler(attachments_dir, temp_dir):
    spooler = AttachmentSpooler(attachments_dir, temp_dir=temp_dir, max_workers=2)
    yield spooler
    spooler.shutdown()


@pytest.fixture
def mongo_db():
    client = mongomock.MongoClient()
    yield client["mailstore_test"]
    client.close()
