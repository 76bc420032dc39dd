import datetime as dt

import pytest
import sqlalchemy as sa

from mimiciii_lazy import DB

metadata = sa.MetaData()

sa.Table(
    "patients",
    metadata,
    sa.Column("row_id", sa.Integer),
    sa.Column("subject_id", sa.Integer),
    sa.Column("gender", sa.String(5)),
    sa.Column("dob", sa.DateTime),
    sa.Column("dod", sa.DateTime),
    sa.Column("expire_flag", sa.Integer),
)
sa.Table(
    "admissions",
    metadata,
    sa.Column("row_id", sa.Integer),
    sa.Column("subject_id", sa.Integer),
    sa.Column("hadm_id", sa.Integer),
    sa.Column("admittime", sa.DateTime),
    sa.Column("dischtime", sa.DateTime),
    sa.Column("deathtime", sa.DateTime),
    sa.Column("admission_type", sa.String(50)),
    sa.Column("insurance", sa.String(255)),
    sa.Column("ethnicity", sa.String(200)),
)
sa.Table(
    "transfers",
    metadata,
    sa.Column("row_id", sa.Integer),
    sa.Column("subject_id", sa.Integer),
    sa.Column("hadm_id", sa.Integer),
    sa.Column("prev_careunit", sa.String(20)),
    sa.Column("curr_careunit", sa.String(20)),
    sa.Column("intime", sa.DateTime),
)
sa.Table(
    "diagnoses_icd",
    metadata,
    sa.Column("row_id", sa.Integer),
    sa.Column("subject_id", sa.Integer),
    sa.Column("hadm_id", sa.Integer),
    sa.Column("seq_num", sa.Integer),
    sa.Column("icd9_code", sa.String(10)),
)
sa.Table(
    "d_icd_diagnoses",
    metadata,
    sa.Column("row_id", sa.Integer),
    sa.Column("icd9_code", sa.String(10)),
    sa.Column("short_title", sa.String(50)),
    sa.Column("long_title", sa.String(255)),
)


def ts(text):
    return dt.datetime.fromisoformat(text)


def _patient(row_id, subject_id, gender, dob, dod=None):
    return {
        "row_id": row_id,
        "subject_id": subject_id,
        "gender": gender,
        "dob": ts(dob),
        "dod": ts(dod) if dod else None,
        "expire_flag": int(dod is not None),
    }


def _admission(row_id, subject_id, hadm_id, admit, disch, death, kind, ethnicity):
    return {
        "row_id": row_id,
        "subject_id": subject_id,
        "hadm_id": hadm_id,
        "admittime": ts(admit),
        "dischtime": ts(disch),
        "deathtime": ts(death) if death else None,
        "admission_type": kind,
        "insurance": "Medicare",
        "ethnicity": ethnicity,
    }


def _transfer(row_id, subject_id, hadm_id, prev, curr, intime):
    return {
        "row_id": row_id,
        "subject_id": subject_id,
        "hadm_id": hadm_id,
        "prev_careunit": prev,
        "curr_careunit": curr,
        "intime": ts(intime),
    }


def _diagnosis(row_id, subject_id, hadm_id, seq_num, code):
    return {
        "row_id": row_id,
        "subject_id": subject_id,
        "hadm_id": hadm_id,
        "seq_num": seq_num,
        "icd9_code": code,
    }


MIMIC_ROWS = {
    "patients": [
        _patient(1, 1, "M", "2100-06-15", "2150-03-15"),
        _patient(2, 2, "F", "2080-03-01"),
        _patient(3, 3, "F", "2090-12-31", "2161-01-05"),
        _patient(4, 4, "M", "2120-01-01"),
        _patient(5, 5, "M", "2110-05-05"),
    ],
    "admissions": [
        _admission(1, 1, 10, "2150-01-30 08:00", "2150-02-10 12:00", None, "EMERGENCY", "ASIAN - CHINESE"),
        _admission(2, 1, 11, "2151-05-01 09:00", "2151-05-09 10:00", None, "EMERGENCY", "ASIAN"),
        _admission(3, 1, 12, "2152-07-04 10:00", "2152-07-08 10:00", None, "ELECTIVE", "BLACK/AFRICAN AMERICAN"),
        _admission(4, 2, 20, "2140-03-01 10:00", "2140-03-05 10:00", None, "URGENT", "WHITE"),
        _admission(5, 3, 30, "2160-12-30 12:00", "2161-01-05 06:00", "2161-01-05 06:00", "EMERGENCY", "WHITE"),
        _admission(6, 3, 31, "2158-02-11 10:00", "2158-02-15 10:00", None, "ELECTIVE", "BLACK/AFRICAN AMERICAN"),
        _admission(7, 4, 40, "2170-05-05 10:00", "2170-05-09 10:00", None, "EMERGENCY", "MARTIAN"),
        _admission(8, 5, 50, "2155-01-01 10:00", "2155-01-04 10:00", None, "EMERGENCY", "HISPANIC OR LATINO"),
    ],
    "transfers": [
        _transfer(1, 1, 10, None, "CCU", "2150-01-30 09:00"),
        _transfer(2, 1, 10, "CCU", "CSRU", "2150-02-01 09:00"),
        _transfer(3, 1, 11, None, "CCU", "2151-05-01 09:30"),
        _transfer(4, 1, 12, None, "MICU", "2152-07-04 10:30"),
        _transfer(5, 2, 20, None, "MICU", "2140-03-01 10:30"),
        _transfer(6, 2, 20, "MICU", "CCU", "2140-03-02 10:30"),
        _transfer(7, 3, 30, None, "CCU", "2160-12-30 12:30"),
        _transfer(8, 3, 31, None, "SICU", "2158-02-11 10:30"),
        _transfer(9, 4, 40, None, "CCU", "2170-05-05 10:30"),
        _transfer(10, 5, 50, None, "CCU", "2155-01-01 10:30"),
    ],
    "diagnoses_icd": [
        _diagnosis(1, 1, 10, 1, "4280"),
        _diagnosis(2, 1, 10, 2, "41011"),
        _diagnosis(3, 1, 10, 3, "412"),
        _diagnosis(4, 1, 11, 1, "41011"),
        _diagnosis(5, 1, 12, 1, "41011"),
        _diagnosis(6, 2, 20, 1, "41011"),
        _diagnosis(7, 3, 30, 1, "412"),
        _diagnosis(8, 3, 30, 2, "4019"),
        _diagnosis(9, 3, 31, 1, "4019"),
        _diagnosis(10, 4, 40, 1, "4019"),
        _diagnosis(11, 5, 50, 1, "4280"),
        _diagnosis(12, 5, 50, 7, "41011"),
    ],
    "d_icd_diagnoses": [
        {
            "row_id": 1,
            "icd9_code": "41011",
            "short_title": "AMI anterior wall, init",
            "long_title": "Acute myocardial infarction of other anterior wall, initial episode of care",
        },
        {
            "row_id": 2,
            "icd9_code": "41071",
            "short_title": "Subendo infarct, initial",
            "long_title": "Subendocardial infarction, initial episode of care",
        },
        {
            "row_id": 3,
            "icd9_code": "412",
            "short_title": "Old myocardial infarct",
            "long_title": "Old myocardial infarction",
        },
        {
            "row_id": 4,
            "icd9_code": "4280",
            "short_title": "CHF NOS",
            "long_title": "Congestive heart failure, unspecified",
        },
        {
            "row_id": 5,
            "icd9_code": "4019",
            "short_title": "Hypertension NOS",
            "long_title": "Unspecified essential hypertension",
        },
    ],
}


def seed_database(path, rows) -> DB:
    """Create the MIMIC-shaped tables named in ``rows`` in a SQLite file and open a DB on it."""
    url = f"sqlite:///{path}"
    engine = sa.create_engine(url)
    metadata.create_all(engine, tables=[metadata.tables[name] for name in rows])
    with engine.begin() as conn:
        for name, data in rows.items():
            if data:
                conn.execute(metadata.tables[name].insert(), data)
    engine.dispose()
    return DB.from_url(url, schema=None)


@pytest.fixture
def make_db(tmp_path):
    """Factory for throwaway databases seeded with custom rows."""
    created = []

    def _make(rows, name="custom.db"):
        instance = seed_database(tmp_path / name, rows)
        created.append(instance)
        return instance

    yield _make
    for instance in created:
        instance.dispose()


@pytest.fixture
def db(make_db):
    """SQLite database seeded with a small MIMIC-III-shaped cohort."""
    return make_db(MIMIC_ROWS, name="mimic.db")
