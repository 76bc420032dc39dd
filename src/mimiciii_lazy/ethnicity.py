"""
Collapse MIMIC-III's free-text ethnicity values into a few categories.

Rules are tried in order and the first match wins. A rule whose label is
``None`` marks values that are known not to carry an ethnicity; anything no
rule matches is unknown (``None``) as well.
"""
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import pandas as pd


@dataclass(frozen=True)
class ClassificationRule:
    label: Optional[str]
    prefixes: Tuple[str, ...] = ()
    members: Tuple[str, ...] = ()

    def matches(self, value: str) -> bool:
        return value.startswith(self.prefixes) or value in self.members


@dataclass(frozen=True)
class RuleSet:
    version: int
    rules: Tuple[ClassificationRule, ...]

    def classify(self, value) -> Optional[str]:
        if not isinstance(value, str):
            return None
        for rule in self.rules:
            if rule.matches(value):
                return rule.label
        return None

    def classify_series(self, values: pd.Series) -> pd.Series:
        # unknown stays None, so the result must be object dtype
        return pd.Series([self.classify(v) for v in values], index=values.index, dtype=object)


ETHNICITY_RULES = RuleSet(
    version=1,
    rules=(
        ClassificationRule("ASIAN", prefixes=("ASIAN",)),
        ClassificationRule("BLACK", prefixes=("BLACK",)),
        ClassificationRule("HISPANIC", prefixes=("HISPANIC",)),
        ClassificationRule("WHITE", prefixes=("WHITE",)),
        ClassificationRule("NATIVE", prefixes=("AMERICAN INDIAN", "NATIVE HAWAIIAN")),
        ClassificationRule(
            "OTHER",
            prefixes=(
                "MULTI RACE ETHNICITY",
                "OTHER",
                "MIDDLE EASTERN",
                "PORTUGUESE",
                "SOUTH AMERICAN",
                "CARIBBEAN ISLAND",
            ),
        ),
        ClassificationRule(
            None,
            members=(
                "UNKNOWN",
                "UNKNOWN/NOT SPECIFIED",
                "UNABLE TO OBTAIN",
                "PATIENT DECLINED TO ANSWER",
            ),
        ),
    ),
)


def classify_ethnicity(value) -> Optional[str]:
    return ETHNICITY_RULES.classify(value)


def resolve_mode(values: Iterable) -> Optional[str]:
    """Most frequent non-missing value; ``None`` on a tie or when all are missing."""
    tally = Counter(v for v in values if not pd.isna(v))
    if not tally:
        return None
    ranked = tally.most_common(2)
    if len(ranked) > 1 and ranked[0][1] == ranked[1][1]:
        return None
    return ranked[0][0]


def resolve_modes(df: pd.DataFrame, key: str, column: str) -> pd.DataFrame:
    """One row per ``key`` with the modal ``column`` value across its records."""
    resolved = {value: resolve_mode(group) for value, group in df.groupby(key, sort=True)[column]}
    return pd.DataFrame(
        {key: list(resolved), column: pd.Series(list(resolved.values()), dtype=object)}
    )
