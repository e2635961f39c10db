from sqlalchemy import inspect, text

from habitisland.config import DEFAULT_DATABASE_URL, EngineConfig, get_diagnostics
from habitisland.db import ensure_schema, init_db, make_engine


def test_from_env_reads_overrides():
    config = EngineConfig.from_env({
        "DATABASE_URL": "sqlite:///tmp/island.db",
        "REMOTE_URL": "https://example.supabase.co",
        "REMOTE_API_KEY": "anon",
        "HABIT_TIMEZONE": "Asia/Kolkata",
        "GRACE_PERIOD_MINUTES": "60",
        "SYNC_QUEUE_LIMIT": "50",
        "SYNC_RETRY_DELAY_SECONDS": "0.5",
    })
    assert config.database_url == "sqlite:///tmp/island.db"
    assert config.remote_url == "https://example.supabase.co"
    assert config.timezone == "Asia/Kolkata"
    assert config.grace_period_minutes == 60
    assert config.sync_queue_limit == 50
    assert config.sync_retry_delay_seconds == 0.5
    assert config.max_ads_per_day == 3


def test_malformed_database_url_falls_back_to_sqlite():
    config = EngineConfig.from_env({"DATABASE_URL": "mysql://nope"})
    assert config.database_url == DEFAULT_DATABASE_URL
    assert EngineConfig.from_env({}).remote_url is None


def test_diagnostics():
    diag = get_diagnostics(EngineConfig())
    assert diag["Database"] == "SQLite (Default)"
    assert diag["Remote"] == "Missing (Offline Mode)"
    assert get_diagnostics(EngineConfig(database_url="postgresql://db/x", remote_url="https://r"))["Remote"] == "Configured"


def test_zone_lookup():
    config = EngineConfig()
    assert config.zone("forest-grove").xp_required == 101
    assert config.zone("atlantis") is None


def test_schema_migration_adds_missing_columns():
    engine = make_engine("sqlite://")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE sync_operations (id VARCHAR PRIMARY KEY)"))

    ensure_schema(engine)
    ensure_schema(engine)

    columns = [c["name"] for c in inspect(engine).get_columns("sync_operations")]
    assert columns.count("last_attempt_at") == 1
    assert columns.count("increment_due") == 1


def test_init_db_is_idempotent():
    engine = make_engine("sqlite://")
    init_db(engine)
    init_db(engine)
    assert inspect(engine).has_table("habits")
