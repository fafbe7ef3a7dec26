"""Helpers shared by the test modules."""

from aiohttp import web
from sqlalchemy import text

from posvault.config.settings import PosVaultSettings
from posvault.db.connection import LocalStore
from posvault.utils.idempotency import parse_iso

# Low iteration count keeps key derivation fast in tests
TEST_KDF_ITERATIONS = 1_000

SUPABASE_TEST_KEY = "service-role-key"

APP_SCHEMA = [
    """CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE,
        role TEXT
    )""",
    """CREATE TABLE categories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL
    )""",
    """CREATE TABLE inventory_items (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0,
        price REAL
    )""",
]


async def create_app_schema(store: LocalStore) -> None:
    async with store.transaction() as conn:
        for ddl in APP_SCHEMA:
            await conn.execute(text(ddl))


async def seed(store: LocalStore, table: str, rows: list[dict]) -> None:
    async with store.transaction() as conn:
        for row in rows:
            await store.insert(table, row, conn)


def make_settings(tmp_path, name: str = "pos.db", **overrides) -> PosVaultSettings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / name}",
        backup_backend="memory",
        device_id="device_test",
        encryption_passphrase="test-passphrase",
        encryption_salt="test-salt",
        encryption_kdf_iterations=TEST_KDF_ITERATIONS,
        sync_interval_seconds=0.05,
    )
    values.update(overrides)
    return PosVaultSettings(_env_file=None, **values)


def postgrest_app(state: dict) -> web.Application:
    """PostgREST sync_log endpoints over *state*; ``max_rows`` caps each response."""

    async def upsert(request):
        if request.headers.get("apikey") != SUPABASE_TEST_KEY:
            return web.json_response({"message": "Invalid API key"}, status=401)
        state["upsert_query"] = dict(request.query)
        state["prefer"] = request.headers.get("Prefer")
        for row in await request.json():
            state["rows"][row["id"]] = row
        return web.Response(status=201)

    async def select(request):
        if state.get("fail"):
            return web.json_response({"message": "upstream timeout"}, status=504)
        query = dict(request.query)
        state["select_query"] = query
        since = parse_iso(query["timestamp"].removeprefix("gt."))
        excluded = query["device_id"].removeprefix("neq.")
        rows = [
            r for r in state["rows"].values()
            if parse_iso(r["timestamp"]) > since and r["device_id"] != excluded and r["synced"]
        ]
        rows.sort(key=lambda r: (r["timestamp"], r["id"]))
        rows += state.get("extra", [])
        offset = int(query.get("offset", 0))
        limit = min(int(query.get("limit", len(rows))), state.get("max_rows", len(rows)))
        state["pages"] = state.get("pages", 0) + 1
        return web.json_response(rows[offset:offset + limit])

    app = web.Application()
    app.router.add_post("/rest/v1/sync_log", upsert)
    app.router.add_get("/rest/v1/sync_log", select)
    return app
