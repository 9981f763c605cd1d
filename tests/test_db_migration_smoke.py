from flashcard_ai.models import apply_migrations, get_connection


REQUIRED_TABLES = {
    "schema_migrations",
    "generations",
    "flashcards",
    "generation_error_logs",
    "llm_usage",
}


def test_db_migrations_are_idempotent(tmp_path):
    db_path = str(tmp_path / "app.db")
    apply_migrations(db_path)
    apply_migrations(db_path)

    with get_connection(db_path) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        tables = {row["name"] for row in rows}
        versions = [row["version"] for row in conn.execute("SELECT version FROM schema_migrations")]

    assert REQUIRED_TABLES.issubset(tables)
    assert versions == [1, 2]
