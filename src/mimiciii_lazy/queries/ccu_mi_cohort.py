"""
Cohort of CCU admissions with a myocardial infarction (MI) diagnosis.

Each step is a registered plan builder, so it can be inspected on its own
with ``db.run("ccu_admissions")`` or ``plan.show_query()``. Everything stays
lazy until ethnicity, whose free-text vocabulary is classified locally and
then staged back into the database for the final join.
"""
import logging

import pandas as pd

from mimiciii_lazy import DB, Plan, col, if_else, registry
from mimiciii_lazy.config import db_url
from mimiciii_lazy.ethnicity import ETHNICITY_RULES, resolve_modes

logger = logging.getLogger(__name__)

MI_TITLE = "myocardial infarction"


def age_in_years(born: str, at: str):
    """Completed years between two timestamp columns, from their year/month/day parts."""
    born, at = col(born), col(at)
    before_birthday = (at.month() < born.month()) | (
        (at.month() == born.month()) & (at.day() < born.day())
    )
    return at.year() - born.year() - if_else(before_birthday, 1, 0)


def died_within(df: pd.DataFrame, days: int = 30, start: str = "admittime", death: str = "dod") -> pd.Series:
    """True where death falls within ``days`` calendar days of ``start``.

    Uses the real elapsed time between the two dates, so a death on Feb 2
    after a Jan 30 admission counts as 3 days.
    """
    elapsed = (
        pd.to_datetime(df[death]).dt.normalize() - pd.to_datetime(df[start]).dt.normalize()
    ).dt.days
    return df[death].notna() & elapsed.le(days)


@registry("ccu_admissions")
def ccu_admissions(db: DB) -> Plan:
    """Admissions whose first care unit was the CCU."""
    return (
        db.table("transfers")
        .select("subject_id", "hadm_id", "prev_careunit", "curr_careunit")
        .filter(col("prev_careunit").is_null(), col("curr_careunit") == "CCU")
        .select("subject_id", "hadm_id")
        .distinct()
    )


@registry("mi_codes")
def mi_codes(db: DB) -> Plan:
    return (
        db.table("d_icd_diagnoses")
        .filter(col("long_title").lower().contains(MI_TITLE))
        .select("icd9_code", "long_title")
    )


@registry("mi_admissions")
def mi_admissions(db: DB, max_seq_num: int = 5) -> Plan:
    """CCU admissions with an MI among their first ``max_seq_num`` diagnoses.

    Keeps the highest-priority MI diagnosis per admission.
    """
    return (
        db.table("diagnoses_icd")
        .semi_join(mi_codes(db), "icd9_code")
        .semi_join(ccu_admissions(db), "hadm_id")
        .filter(col("seq_num") <= max_seq_num)
        .group_by("hadm_id")
        .top_n(1, "seq_num", largest=False)
        .mutate(principal_dx=col("seq_num") == 1)
        .select("subject_id", "hadm_id", "icd9_code", "seq_num", "principal_dx")
    )


@registry("study_admissions")
def study_admissions(db: DB, max_seq_num: int = 5) -> Plan:
    """First qualifying admission per patient, with demographics and age."""
    admissions = db.table("admissions").select(
        "hadm_id", "admittime", "dischtime", "deathtime", "admission_type", "insurance"
    )
    patients = db.table("patients").select("subject_id", "gender", "dob", "dod")
    return (
        mi_admissions(db, max_seq_num)
        .join(admissions, "hadm_id", how="left")
        .group_by("subject_id")
        .top_n(1, "admittime", largest=False)
        .join(patients, "subject_id", how="left")
        .mutate(
            age=age_in_years("dob", "admittime"),
            died_in_hospital=col("deathtime").not_null(),
        )
    )


def patient_ethnicity(db: DB, study: Plan) -> pd.DataFrame:
    """Collapsed ethnicity per study patient, resolved across all of their admissions."""
    rows = (
        db.table("admissions")
        .select("subject_id", "ethnicity")
        .semi_join(study, "subject_id")
        .collect()
    )
    rows["ethnicity"] = ETHNICITY_RULES.classify_series(rows["ethnicity"])
    resolved = resolve_modes(rows, "subject_id", "ethnicity")
    # keep the key numeric even when no patients qualify
    resolved["subject_id"] = resolved["subject_id"].astype("int64")
    return resolved


@registry("ccu_mi_cohort")
def build_cohort(db: DB, max_seq_num: int = 5, mortality_days: int = 30) -> pd.DataFrame:
    study = study_admissions(db, max_seq_num)
    ethnicity = patient_ethnicity(db, study)
    logger.info(
        "Resolved ethnicity for %d patients, %d unknown",
        len(ethnicity),
        int(ethnicity["ethnicity"].isna().sum()),
    )

    # one staged table per session, replaced on every build
    staged = db.copy_to(ethnicity, name="cohort_ethnicity", replace=True)
    cohort = study.join(staged, "subject_id", how="left").collect()
    cohort[f"mortality_{mortality_days}d"] = died_within(cohort, mortality_days)
    return cohort


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    with DB.from_url(db_url()) as db:
        print(build_cohort(db))
