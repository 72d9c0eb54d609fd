"""Central configuration for the mnemo engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MNEMO_`` (nested keys use
double underscores, e.g. ``MNEMO_REFINEMENT__ALLOW_DELETE=true``).

Components never read configuration on their own: each one receives the
section it needs through its constructor.  :func:`get_config` exists for
process entry points (the MCP server, the CLI and :class:`~mnemo.engine.Mnemo`
when no explicit config is given).

Usage::

    from mnemo.config import load_config

    cfg = load_config()
    print(cfg.windowing.epsilon_days)
    print(cfg.refinement.allow_delete)
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RefinementConfig:
    """Limits and switches for agent-authored refinement plans."""

    default_budget: int = 100
    """Maximum number of actions applied from a single plan when the caller
    does not pass an explicit budget."""

    allow_delete: bool = False
    """DELETE actions are rejected outright unless this is enabled."""

    access_tracking_enabled: bool = True
    access_tracking_top_n: int = 3
    """Only the first *n* ids of a retrieval get their access stats bumped."""

    access_priority_boost: float = 0.01


@dataclass(frozen=True, slots=True)
class WindowingConfig:
    """Parameters for 1-D density clustering of memories along narrative time."""

    epsilon_days: float = 14.0
    min_memories: int = 2
    alignment: str = "cluster"  # "cluster" or "natural"


@dataclass(frozen=True, slots=True)
class TemporalConfig:
    """Bitemporal validation settings."""

    default_policy: str = "warn-clamp"
    max_graph_nodes: int = 10_000
    """Upper bound on distinct nodes in a ``leads_to`` graph submitted for
    cycle detection.  Larger graphs are refused rather than traversed."""


@dataclass(frozen=True, slots=True)
class ReconsolidationConfig:
    slow_threshold_ms: int = 500


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Retry behaviour when SQLite reports a busy or locked database."""

    busy_retries: int = 3
    retry_backoff_ms: int = 50


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MnemoConfig:
    """Root configuration object.

    ``db_path`` is stored with ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.mnemo/mnemo.db"))
    default_index: str = "default"

    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    windowing: WindowingConfig = field(default_factory=WindowingConfig)
    temporal: TemporalConfig = field(default_factory=TemporalConfig)
    reconsolidation: ReconsolidationConfig = field(default_factory=ReconsolidationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass, hence object.__setattr__.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MNEMO_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if target_type is bool:
        return target_type(value.strip().lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    if target_type is Path:
        return target_type(value)  # type: ignore[return-value]
    return target_type(value.strip())  # type: ignore[return-value]


def _load_dataclass(dc_type: type[T], prefix: str, environ: Mapping[str, str]) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix, environ)
        else:
            raw = environ.get(f"{prefix}{f.name}".upper())
            if raw is not None and raw != "":
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(environ: Mapping[str, str] | None = None) -> MnemoConfig:
    """Build a :class:`MnemoConfig` from defaults plus ``MNEMO_*`` overrides.

    Parameters
    ----------
    environ:
        Mapping to read overrides from.  Defaults to :data:`os.environ`.
    """
    return _load_dataclass(MnemoConfig, _ENV_PREFIX, os.environ if environ is None else environ)


_cached_config: MnemoConfig | None = None


def get_config(*, reload: bool = False) -> MnemoConfig:
    """Return the process-wide :class:`MnemoConfig`, loading it on first use."""
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = load_config()
    return _cached_config
