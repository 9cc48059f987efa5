"""
Configuration Loader (``recon_config.loader``).

Responsibility
--------------
Resolves a partial override onto the hard-coded ``MatchingConfig``
defaults (deep merge per policy group) and loads overrides from YAML
files.

Architecture position
---------------------
**Config layer**.  Consumed by ``recon_services`` and by engine entry
points that accept a raw override.  Depends only on the kernel's
exceptions and hashing utilities.

Invariants enforced
-------------------
* Unknown keys are rejected with ``InvalidConfigError``; a typo never
  silently falls back to a default.
* Values are coerced to the type of the default they replace
  (``Decimal`` tolerances, ``int`` windows, ``bool`` flags, ``tuple``
  keyword lists).
* Original camelCase spellings (``amountToleranceAbs``,
  ``subsetSum.maxCandidates``, ``feeKeywords`` ...) are accepted and
  mapped onto their snake_case field.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity in logs and audit inputs.

Failure modes
-------------
* Missing or unreadable YAML file  -> ``ConfigFileError``.
* YAML document that is not a mapping  -> ``ConfigFileError``.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import asdict, fields, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from recon_config.schema import POLICY_GROUPS, MatchingConfig
from recon_kernel.exceptions import ConfigFileError, InvalidConfigError
from recon_kernel.logging_config import get_logger
from recon_kernel.utils.hashing import hash_payload

logger = get_logger("config.loader")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")

_GROUP_ALIASES = {
    "min_required_fields": "required_fields",
}

_KEYWORD_ALIASES = {
    "fee_keywords": "fee",
    "technical_keywords": "technical",
    "prepayment_keywords": "prepayment",
    "partial_keywords": "partial_payment",
}


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", str(key)).lower()


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        ConfigFileError: if the file is missing or is not a mapping.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigFileError(str(path), exc.strerror or str(exc)) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigFileError(str(path), f"expected a mapping, got {type(data).__name__}")
    return data


def _coerce(current: Any, value: Any, path: str) -> Any:
    """Coerce ``value`` to the type of the default ``current``."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        raise InvalidConfigError(path, f"expected bool, got {value!r}")

    if isinstance(current, int):
        if isinstance(value, bool):
            raise InvalidConfigError(path, f"expected int, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        raise InvalidConfigError(path, f"expected int, got {value!r}")

    if isinstance(current, Decimal):
        if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
            raise InvalidConfigError(path, f"expected a number, got {value!r}")
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise InvalidConfigError(path, f"expected a number, got {value!r}") from exc

    if isinstance(current, tuple):
        if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
            raise InvalidConfigError(path, f"expected a list, got {value!r}")
        return tuple(str(item) for item in value)

    raise InvalidConfigError(path, "field cannot be overridden")


def _merge_group(instance: Any, patch: Mapping[str, Any], prefix: str) -> Any:
    known = {f.name for f in fields(instance)}
    changes: dict[str, Any] = {}
    for raw_key, value in patch.items():
        key = _snake(raw_key)
        path = f"{prefix}.{key}"
        if key not in known:
            raise InvalidConfigError(path, "unknown key")
        changes[key] = _coerce(getattr(instance, key), value, path)
    return replace(instance, **changes)


def _split_override(
    override: Mapping[str, Any],
) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
    """Separate top-level scalars from per-group patches, resolving aliases."""
    top: dict[str, Any] = {}
    groups: dict[str, dict[str, Any]] = {}

    for raw_key, value in override.items():
        key = _snake(raw_key)
        key = _GROUP_ALIASES.get(key, key)

        if key in _KEYWORD_ALIASES:
            groups.setdefault("keywords", {})[_KEYWORD_ALIASES[key]] = value
            continue

        if key in POLICY_GROUPS:
            if value is None:
                continue
            if not isinstance(value, Mapping):
                raise InvalidConfigError(key, f"expected a mapping, got {value!r}")
            groups.setdefault(key, {}).update(value)
            continue

        top[key] = value

    return top, groups


def resolve_config(
    override: Mapping[str, Any] | MatchingConfig | None = None,
    base: MatchingConfig | None = None,
) -> MatchingConfig:
    """
    Merge a partial override onto ``base`` (defaults when omitted).

    Nested policy groups are merged field by field, so
    ``{"subset_sum": {"max_candidates": 20}}`` keeps the default
    ``max_solutions``.

    Raises:
        InvalidConfigError: on unknown keys or values of the wrong type.
    """
    if isinstance(override, MatchingConfig):
        return override

    config = base or MatchingConfig()
    if not override:
        return config

    top, groups = _split_override(override)

    known_top = {f.name for f in fields(config)} - set(POLICY_GROUPS)
    changes: dict[str, Any] = {}
    for key, value in top.items():
        if key not in known_top:
            raise InvalidConfigError(key, "unknown key")
        changes[key] = _coerce(getattr(config, key), value, key)

    for name, patch in groups.items():
        changes[name] = _merge_group(getattr(config, name), patch, name)

    resolved = replace(config, **changes)
    logger.debug(
        "config_resolved",
        extra={"overridden_keys": sorted(changes), "checksum": compute_checksum(resolved)},
    )
    return resolved


def load_config_file(path: Path | str, base: MatchingConfig | None = None) -> MatchingConfig:
    """
    Load a YAML override file and resolve it onto the defaults.

    The file may hold the override at top level or under a single
    ``matching:`` key.
    """
    data = load_yaml_file(Path(path))
    if set(data) == {"matching"} and isinstance(data["matching"], dict):
        data = data["matching"]
    config = resolve_config(data, base=base)
    logger.info(
        "config_file_loaded",
        extra={"path": str(path), "checksum": compute_checksum(config)},
    )
    return config


def config_to_dict(config: MatchingConfig) -> dict[str, Any]:
    """Plain nested dict view of a config (tuples stay tuples)."""
    return asdict(config)


def compute_checksum(config: MatchingConfig) -> str:
    """Deterministic SHA-256 identity of a resolved config."""
    return hash_payload(config_to_dict(config))
