import pytest
import sqlalchemy as sa

from mimiciii_lazy import DB, ExecutionError, col
from mimiciii_lazy.config import ConnectionConfig, db_url


def test_db_url_requires_variable(monkeypatch):
    monkeypatch.delenv("MIMIC_TEST_URL", raising=False)
    with pytest.raises(RuntimeError):
        db_url("MIMIC_TEST_URL")
    monkeypatch.setenv("MIMIC_TEST_URL", "sqlite://")
    assert db_url("MIMIC_TEST_URL") == "sqlite://"


def test_connection_config_from_env(monkeypatch):
    for name in ("HOST", "PORT", "DBNAME", "SCHEMA", "USER", "PASSWORD"):
        monkeypatch.delenv(f"MIMIC_{name}", raising=False)
    monkeypatch.setenv("MIMIC_HOST", "db.example.org")
    monkeypatch.setenv("MIMIC_PORT", "5433")
    monkeypatch.setenv("MIMIC_USER", "analyst")
    monkeypatch.setenv("MIMIC_PASSWORD", "s3cret")

    config = ConnectionConfig.from_env()
    assert config == ConnectionConfig(
        host="db.example.org", port=5433, dbname="mimic", schema="mimiciii", user="analyst", password="s3cret"
    )
    url = config.url()
    assert url.drivername == "postgresql+psycopg2"
    assert url.host == "db.example.org"
    assert url.port == 5433
    assert url.database == "mimic"
    assert "s3cret" not in url.render_as_string(hide_password=True)


def test_connection_config_rejects_bad_port(monkeypatch):
    monkeypatch.setenv("MIMIC_PORT", "fifty")
    with pytest.raises(RuntimeError):
        ConnectionConfig.from_env()


def test_registry_and_raw_queries(db):
    @db.register("n_patients")
    def n_patients(db):
        return "SELECT COUNT(*) AS n FROM patients WHERE gender = :gender", {"gender": "F"}

    assert db.run("n_patients")["n"].tolist() == [2]
    with pytest.raises(KeyError):
        db.run("no_such_query")


def test_list_tables_and_preview(db):
    assert {"patients", "admissions", "transfers", "diagnoses_icd", "d_icd_diagnoses"} <= set(db.list_tables())
    assert len(db.table_df("admissions", limit=3)) == 3
    assert len(db.table_df("admissions", limit=None)) == 8


def test_copy_to_stages_rows(db):
    staged = db.copy_to([{"subject_id": 2, "flag": True}, {"subject_id": 4, "flag": False}])
    assert staged.source.name == "staged_001"
    assert db.copy_to([{"x": 1}]).source.name == "staged_002"

    rows = staged.collect()
    assert rows["subject_id"].tolist() == [2, 4]
    assert [bool(v) for v in rows["flag"]] == [True, False]

    genders = db.table("patients").semi_join(staged.filter(col("flag")), "subject_id").pull("gender")
    assert genders.tolist() == ["F"]


def test_copy_to_replace(db):
    db.copy_to([{"x": 1}], name="picks")
    with pytest.raises(ExecutionError):
        db.copy_to([{"x": 2}], name="picks")
    replaced = db.copy_to([{"x": 2}, {"x": 3}], name="picks", replace=True)
    assert sorted(replaced.pull("x")) == [2, 3]


def test_context_manager_disposes(tmp_path):
    path = tmp_path / "empty.db"
    with DB.from_url(f"sqlite:///{path}", schema=None) as db:
        assert db.list_tables() == []
    assert db._conn is None


def test_table_columns_are_introspected_once(db):
    first = db.table("patients")
    statements = []

    @sa.event.listens_for(db.engine, "before_cursor_execute")
    def _record(conn, cursor, statement, *args):
        statements.append(statement)

    again = db.table("patients")
    assert statements == []
    assert again.columns == first.columns
