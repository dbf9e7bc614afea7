"""
Pytest fixtures and test infrastructure for the ingestion tests.
"""
import copy
import json
import os
import sqlite3
import sys

import pytest
import requests
from requests.structures import CaseInsensitiveDict

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


BASE_ENV = {
    'DATABASE_URL': 'sqlite:///:memory:',
    'SINALITE_CLIENT_ID': 'test-client',
    'SINALITE_CLIENT_SECRET': 'test-secret',
    'SINALITE_API_BASE': 'https://api.test',
    'SINALITE_REQUEST_DELAY': '0',
}

REGULAR_PAYLOAD = [
    [
        {"id": 101, "group": "Size", "name": "2 x 3.5"},
        {"id": 102, "group": "Size", "name": "3.5 x 4"},
        {"id": 201, "group": "Stock", "name": "14pt Gloss"},
    ],
    [
        {"hash": "a1b2", "value": "19.99"},
        {"hash": "c3d4", "value": "24.50"},
        {"hash": "", "value": "0.00"},
    ],
    [
        {"turnaround": "3 days"},
    ],
]

ROLL_LABEL_PAYLOAD = [
    [
        {"option_id": 1, "opt_val_id": 11, "option_val": "2 x 2", "name": "Size",
         "label": "Size", "html_type": "select", "opt_sort_order": 1,
         "opt_val_sort_order": 1, "img_src": None, "extra_turnaround_days": 0},
        {"option_id": 1, "opt_val_id": 12, "option_val": "3 x 3", "name": "Size",
         "label": "Size", "html_type": "select", "opt_sort_order": 1,
         "opt_val_sort_order": 2, "img_src": None, "extra_turnaround_days": 1},
    ],
    [
        {"size_id": 11, "qty": 250,
         "pricing_product_option_entity_id_1": 1, "pricing_product_option_value_entity_id_1": 11,
         "pricing_product_option_entity_id_2": 2, "pricing_product_option_value_entity_id_2": 21},
    ],
    [
        {"pricing_product_option_value_entity_id": 11, "content_type": "description",
         "content": "Small square label"},
        {"pricing_product_option_value_entity_id": 12, "content": "No type given"},
    ],
]


@pytest.fixture
def sqlite_conn():
    """In-memory SQLite database with the Sinalite schema."""
    from catalog_ingest.database import ensure_schema

    conn = sqlite3.connect(':memory:', check_same_thread=False)
    conn.row_factory = sqlite3.Row
    ensure_schema(conn)
    conn.commit()
    yield conn
    conn.close()


@pytest.fixture
def db_pool(sqlite_conn):
    """DatabasePool wrapping the in-memory connection."""
    from catalog_ingest.database import DatabasePool

    return DatabasePool.from_connection(sqlite_conn)


@pytest.fixture
def env():
    return dict(BASE_ENV)


@pytest.fixture
def settings(env):
    """Settings built from the test environment (no retries wait in tests)."""
    from catalog_ingest.config import load_settings

    return load_settings(env)


@pytest.fixture
def regular_payload():
    return copy.deepcopy(REGULAR_PAYLOAD)


@pytest.fixture
def roll_label_payload():
    return copy.deepcopy(ROLL_LABEL_PAYLOAD)


def build_response(status=200, body=None, headers=None, text=None):
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status
    response.reason = "TEST"
    response.url = "https://api.test/"
    response.encoding = 'utf-8'
    if text is None:
        text = "" if body is None else json.dumps(body)
    response._content = text.encode('utf-8')
    response.headers = CaseInsensitiveDict(headers or {})
    return response


@pytest.fixture
def make_response():
    return build_response


class FakeSinaliteClient:
    """In-memory stand-in for SinaliteClient used by pipeline tests."""

    def __init__(self, settings, catalog=None, details=None):
        self.settings = settings
        self.catalog = catalog if catalog is not None else []
        self.details = details or {}
        self.token = None
        self.detail_requests = []
        self.closed = False

    def authenticate(self):
        self.token = "Bearer test-token"
        return self.token

    def get_json(self, path, params=None):
        if path == "product":
            return self.catalog
        return None

    def fetch_detail(self, product_id, store_code):
        self.detail_requests.append((product_id, store_code))
        value = self.details.get((product_id, store_code))
        if isinstance(value, Exception):
            raise value
        return copy.deepcopy(value)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_client_factory(settings):
    def _factory(catalog=None, details=None, client_settings=None):
        return FakeSinaliteClient(client_settings or settings, catalog=catalog, details=details)
    return _factory
