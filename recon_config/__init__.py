"""
Matching configuration for the reconciliation engine.

Usage:
    from recon_config import resolve_config

    cfg = resolve_config({"amount_tolerance_abs": "0.05",
                          "subset_sum": {"max_candidates": 16}})
"""

from recon_config.loader import (
    compute_checksum,
    config_to_dict,
    load_config_file,
    resolve_config,
)
from recon_config.schema import (
    KeywordPolicy,
    MatchingConfig,
    PrepassPolicy,
    RequiredFieldsPolicy,
    ScoringPolicy,
    SubscriptionDetectionPolicy,
    SubsetSumPolicy,
)

__all__ = [
    "KeywordPolicy",
    "MatchingConfig",
    "PrepassPolicy",
    "RequiredFieldsPolicy",
    "ScoringPolicy",
    "SubscriptionDetectionPolicy",
    "SubsetSumPolicy",
    "compute_checksum",
    "config_to_dict",
    "load_config_file",
    "resolve_config",
]
