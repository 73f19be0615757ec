"""
Pytest configuration and shared fixtures for pNode crawler tests.

This module provides:
- src on sys.path
- Canned get-pods / get-stats payloads
- A fake JSON-RPC client that routes by URL, so no test touches the network
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


def make_stats_payload(**overrides):
    """A valid get-stats result; keyword arguments override fields."""
    payload = {
        "cpu_percent": 20.0,
        "ram_used": 40,
        "ram_total": 100,
        "uptime": 700000,
        "last_updated": 1700000000,
        "packets_sent": 2000,
        "packets_received": 2000,
        "active_streams": 1,
        "total_pages": 10,
        "total_bytes": 4096,
        "file_size": 8192,
        "current_index": 5,
    }
    payload.update(overrides)
    return payload


def make_pod(address, version="1.0.0", pubkey=None, last_seen_timestamp=None):
    from node_models import Pod
    return Pod(address=address, version=version, pubkey=pubkey, last_seen_timestamp=last_seen_timestamp)


@pytest.fixture
def stats_payload():
    return make_stats_payload()


@pytest.fixture
def node_stats():
    from node_models import NodeStats
    return NodeStats.from_dict(make_stats_payload())


@pytest.fixture
def mock_session():
    """A MagicMock standing in for requests.Session."""
    return MagicMock()


@pytest.fixture
def store():
    from node_store import NodeStore
    return NodeStore()
