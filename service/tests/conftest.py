"""
Shared test infrastructure.

Provides:
- required settings in the environment, settings cache cleared per test
- retry waits disabled (tenacity.wait_none) so retry paths run instantly
- fake_supabase: in-memory stand-in for the table/storage calls we use
- fake_api: TelegramAPI stand-in recording every outbound call
"""

import itertools
import os
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from tenacity import wait_none

os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:test-token")
os.environ.setdefault("SUPABASE_URL", "https://project.supabase.test")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-key")
os.environ.setdefault("OPENAI_API_KEY", "sk-test")

from postgrest.exceptions import APIError  # noqa: E402

from storefront_bot.config import get_settings  # noqa: E402
from storefront_bot.services import http_client, image_analysis, persistence  # noqa: E402
from storefront_bot.telegram_bot import registration  # noqa: E402


@pytest.fixture(autouse=True)
def _settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _no_retry_wait(monkeypatch):
    monkeypatch.setattr(http_client, "DEFAULT_WAIT", wait_none())
    monkeypatch.setattr(image_analysis, "PROVIDER_RETRY_WAIT", wait_none())
    monkeypatch.setattr(persistence, "UPLOAD_RETRY_WAIT", wait_none())
    monkeypatch.setattr(registration, "LOOKUP_RETRY_WAIT", wait_none())


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------

UNIQUE_COLUMNS = {"users": ("telegram_id",)}


class _Query:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.filters: list[tuple[str, Any]] = []
        self.action = "select"
        self.payload: Any = None
        self.max_rows: Optional[int] = None

    def select(self, *columns):
        self.action = "select"
        return self

    def insert(self, payload):
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload):
        self.action = "update"
        self.payload = payload
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def _matches(self, row):
        return all(str(row.get(column)) == str(value) for column, value in self.filters)

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])

        if self.action == "insert":
            new_row = dict(self.payload)
            self.db.before_insert(self.table, new_row)
            for column in UNIQUE_COLUMNS.get(self.table, ()):
                if any(row.get(column) == new_row.get(column) for row in rows):
                    raise APIError({
                        "message": f"duplicate key value violates unique constraint on {column}",
                        "code": "23505",
                        "hint": None,
                        "details": None,
                    })
            new_row.setdefault("id", self.db.next_id())
            rows.append(new_row)
            return SimpleNamespace(data=[dict(new_row)])

        matched = [row for row in rows if self._matches(row)]
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched])

        if self.max_rows is not None:
            matched = matched[:self.max_rows]
        return SimpleNamespace(data=[dict(row) for row in matched])


class _Bucket:
    def __init__(self, db: "FakeSupabase", name: str):
        self.db = db
        self.name = name

    def upload(self, path, data, options=None):
        if self.db.fail_uploads:
            self.db.fail_uploads -= 1
            raise RuntimeError("storage unavailable")
        self.db.blobs[f"{self.name}/{path}"] = data
        return SimpleNamespace(path=path)

    def create_signed_url(self, path, expires_in):
        return {"signedURL": f"https://storage.test/{self.name}/{path}?token=signed"}


class FakeSupabase:
    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.blobs: dict[str, bytes] = {}
        self.fail_uploads = 0
        self._ids = itertools.count(1)
        self.storage = SimpleNamespace(from_=lambda name: _Bucket(self, name))

    def next_id(self) -> str:
        return f"row-{next(self._ids)}"

    def before_insert(self, table: str, row: dict) -> None:
        """Hook for tests simulating a concurrent writer."""

    def table(self, name: str) -> _Query:
        return _Query(self, name)

    def rows(self, name: str) -> list[dict]:
        return self.tables.get(name, [])

    def add_user(self, telegram_id: str, status: str = "approved", role: str = "user", username: str = "op"):
        row = {
            "id": self.next_id(),
            "telegram_id": telegram_id,
            "username": username,
            "role": role,
            "status": status,
        }
        self.tables.setdefault("users", []).append(row)
        return row


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------

class FakeTelegramAPI:
    def __init__(self):
        self.sent: list[dict] = []
        self.edited: list[dict] = []
        self.deleted: list[tuple[int, int]] = []
        self.scheduled_deletes: list[tuple[int, int, float]] = []
        self.answered: list[tuple[str, Optional[str]]] = []
        self.fail_sends_to: set[int] = set()
        self._ids = itertools.count(1000)

    async def send_message(self, chat_id, text, reply_markup=None, parse_mode=None):
        if chat_id in self.fail_sends_to:
            raise RuntimeError(f"chat {chat_id} unreachable")
        message_id = next(self._ids)
        self.sent.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup, "message_id": message_id})
        return message_id

    async def edit_message_text(self, chat_id, message_id, text, reply_markup=None):
        self.edited.append({"chat_id": chat_id, "message_id": message_id, "text": text, "reply_markup": reply_markup})

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))
        return True

    async def delete_messages(self, chat_id, message_ids):
        for message_id in message_ids:
            await self.delete_message(chat_id, message_id)

    async def delete_after(self, chat_id, message_id, delay):
        self.scheduled_deletes.append((chat_id, message_id, delay))

    async def answer_callback_query(self, callback_query_id, text=None):
        self.answered.append((callback_query_id, text))

    async def get_file_url(self, file_id):
        return f"https://files.test/{file_id}"

    async def download_file(self, file_id):
        return f"bytes-of-{file_id}".encode()

    def texts(self, chat_id: Optional[int] = None) -> list[str]:
        return [m["text"] for m in self.sent if chat_id is None or m["chat_id"] == chat_id]


@pytest.fixture
def fake_api():
    return FakeTelegramAPI()
