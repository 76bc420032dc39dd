import math

import pandas as pd
import pytest

from mimiciii_lazy.ethnicity import (
    ETHNICITY_RULES,
    ClassificationRule,
    RuleSet,
    classify_ethnicity,
    resolve_mode,
    resolve_modes,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("ASIAN - CHINESE", "ASIAN"),
        ("BLACK/AFRICAN AMERICAN", "BLACK"),
        ("HISPANIC OR LATINO", "HISPANIC"),
        ("WHITE - RUSSIAN", "WHITE"),
        ("AMERICAN INDIAN/ALASKA NATIVE", "NATIVE"),
        ("MULTI RACE ETHNICITY", "OTHER"),
        ("UNKNOWN", None),
        ("UNKNOWN/NOT SPECIFIED", None),
        ("PATIENT DECLINED TO ANSWER", None),
        ("MARTIAN", None),
        ("asian", None),
        (None, None),
    ],
)
def test_classify_ethnicity(raw, expected):
    assert classify_ethnicity(raw) == expected


def test_first_matching_rule_wins():
    rules = RuleSet(
        version=2,
        rules=(
            ClassificationRule("SPECIFIC", prefixes=("ASIAN - CHINESE",)),
            ClassificationRule("ASIAN", prefixes=("ASIAN",)),
        ),
    )
    assert rules.classify("ASIAN - CHINESE") == "SPECIFIC"
    assert rules.classify("ASIAN - KOREAN") == "ASIAN"
    assert ETHNICITY_RULES.version == 1


def test_classify_series_keeps_missing():
    values = pd.Series(["WHITE", None, "UNABLE TO OBTAIN"])
    assert ETHNICITY_RULES.classify_series(values).tolist() == ["WHITE", None, None]

    typed = ETHNICITY_RULES.classify_series(pd.Series(["ASIAN - CHINESE", None], dtype="string"))
    assert typed.dtype == object
    assert typed.tolist() == ["ASIAN", None]


def test_resolve_mode():
    assert resolve_mode(["ASIAN", "ASIAN", "BLACK"]) == "ASIAN"
    assert resolve_mode(["ASIAN", "BLACK"]) is None
    assert resolve_mode([None, math.nan, None]) is None
    assert resolve_mode([]) is None
    # missing values never count towards the mode
    assert resolve_mode([None, None, "WHITE"]) == "WHITE"


def test_resolve_modes_per_entity():
    records = pd.DataFrame(
        {
            "subject_id": [1, 1, 1, 2, 2, 3],
            "ethnicity": ["ASIAN", "ASIAN", "BLACK", "WHITE", "BLACK", None],
        }
    )
    resolved = resolve_modes(records, "subject_id", "ethnicity")
    assert list(resolved.columns) == ["subject_id", "ethnicity"]
    assert dict(zip(resolved["subject_id"], resolved["ethnicity"])) == {1: "ASIAN", 2: None, 3: None}
