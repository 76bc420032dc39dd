# importing the module registers its plan builders
from . import ccu_mi_cohort  # noqa: F401
