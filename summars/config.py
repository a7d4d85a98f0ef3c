"""
Configuration module for cl-summars

Contains the Config dataclass holding all `summars-*` options, the frozen
ConfigSnapshot taken once per report, and validation of option values coming
from plugin startup or from `summars` RPC arguments.

Option values are validated in one place (`validate_option`) so that startup
options and per-call overrides are held to the same rules.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .util import SHORT_CHANNEL_STATES


PLUGIN_NAME = "summars"


class ConfigError(ValueError):
    """An option value was rejected."""


class SummaryColumn(Enum):
    """Columns of the channel table."""
    OUT_SATS = "OUT_SATS"
    IN_SATS = "IN_SATS"
    TOTAL_SATS = "TOTAL_SATS"
    SCID = "SCID"
    MIN_HTLC = "MIN_HTLC"
    MAX_HTLC = "MAX_HTLC"
    FLAG = "FLAG"
    BASE = "BASE"
    PPM = "PPM"
    IN_BASE = "IN_BASE"
    IN_PPM = "IN_PPM"
    ALIAS = "ALIAS"
    PEER_ID = "PEER_ID"
    UPTIME = "UPTIME"
    HTLCS = "HTLCS"
    STATE = "STATE"
    PERC_US = "PERC_US"
    PING = "PING"


@dataclass(frozen=True)
class SortOrder:
    column: SummaryColumn
    reverse: bool = False

    def __str__(self) -> str:
        return f"{'-' if self.reverse else ''}{self.column.value}"


FORWARDS_COLUMNS: Tuple[str, ...] = (
    "received_time", "resolved_time", "in_channel", "out_channel", "in_alias",
    "out_alias", "in_sats", "in_msats", "out_sats", "out_msats", "fee_sats",
    "fee_msats", "eff_fee_ppm",
)
PAYS_COLUMNS: Tuple[str, ...] = (
    "completed_at", "payment_hash", "sats_requested", "msats_requested",
    "sats_sent", "msats_sent", "fee_sats", "fee_msats", "destination",
    "description", "preimage",
)
INVOICES_COLUMNS: Tuple[str, ...] = (
    "paid_at", "label", "sats_received", "msats_received", "description",
    "payment_hash", "preimage",
)

VISIBILITY_FILTERS = ("PUBLIC", "PRIVATE")
CONNECTIVITY_FILTERS = ("ONLINE", "OFFLINE")


@dataclass(frozen=True)
class ExcludeStates:
    """Parsed `summars-exclude-states`."""
    states: FrozenSet[str] = frozenset()
    visibility: Optional[str] = None
    connectivity: Optional[str] = None

    def __str__(self) -> str:
        parts = sorted(self.states)
        if self.visibility:
            parts.append(self.visibility)
        if self.connectivity:
            parts.append(self.connectivity)
        return ",".join(parts)


# =============================================================================
# PARSERS
# =============================================================================

def _split_list(value: str) -> Tuple[str, ...]:
    cleaned = "".join(c for c in value if not c.isspace())
    return tuple(item for item in cleaned.split(",") if item)


def parse_summary_columns(value: str) -> Tuple[SummaryColumn, ...]:
    columns = []
    for name in _split_list(value):
        try:
            columns.append(SummaryColumn(name))
        except ValueError:
            raise ConfigError(
                f"`{name}` not found in valid column names: "
                f"{', '.join(c.value for c in SummaryColumn)}"
            ) from None
    if not columns:
        raise ConfigError("At least one channel column is required")
    return tuple(columns)


def parse_sort_by(value: str) -> SortOrder:
    reverse = value.startswith("-")
    name = value[1:] if reverse else value
    try:
        return SortOrder(SummaryColumn(name), reverse)
    except ValueError:
        raise ConfigError(
            f"Not a valid column name: `{value}`. Must be one of: "
            f"{', '.join(c.value for c in SummaryColumn)}"
        ) from None


def parse_flow_columns(value: str, valid: Tuple[str, ...], what: str) -> Tuple[str, ...]:
    columns = _split_list(value)
    for name in columns:
        if name not in valid:
            raise ConfigError(
                f"`{name}` not found in valid {what} column names: {', '.join(valid)}"
            )
    if not columns:
        raise ConfigError(f"At least one {what} column is required")
    return columns


def parse_exclude_states(value: str) -> ExcludeStates:
    items = _split_list(value)
    for a, b in (VISIBILITY_FILTERS, CONNECTIVITY_FILTERS):
        if a in items and b in items:
            raise ConfigError(f"Can only filter `{a}` OR `{b}`, not both.")

    short_states = set(SHORT_CHANNEL_STATES.values())
    states = set()
    visibility = None
    connectivity = None
    for item in items:
        if item in VISIBILITY_FILTERS:
            visibility = item
        elif item in CONNECTIVITY_FILTERS:
            connectivity = item
        elif item in short_states:
            states.add(item)
        else:
            raise ConfigError(f"Could not parse channel state: `{item}`")
    return ExcludeStates(frozenset(states), visibility, connectivity)


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ConfigError(f"{name} needs to be bool (true or false).")


def _parse_int(name: str, value: Any, minimum: int, is_hours: bool) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number.")
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError:
            raise ConfigError(f"Could not parse a number from `{value}` for {name}") from None
    if not isinstance(value, int):
        raise ConfigError(f"{name} must be a number.")
    if value < minimum:
        raise ConfigError(f"{name} must be greater than or equal to {minimum}")
    if is_hours:
        max_hours = int(time.time()) // 3600
        if value >= max_hours:
            raise ConfigError(
                f"{name} needs to be a positive number and smaller than {max_hours}, not `{value}`."
            )
    return value


def _parse_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ConfigError(f"Not a string. {name} must be a string.")
    return value


# =============================================================================
# OPTION TABLE
# =============================================================================

@dataclass(frozen=True)
class OptionSpec:
    """One `summars-*` option: field name, kind, default, minimum, help."""
    field: str
    kind: str
    default: Any
    description: str
    minimum: int = 0
    is_hours: bool = False


_SUMMARY_DEFAULT = "OUT_SATS,IN_SATS,SCID,MAX_HTLC,FLAG,BASE,PPM,ALIAS,PEER_ID,UPTIME,HTLCS,STATE"

OPTION_FIELDS: Dict[str, OptionSpec] = {
    "summars-columns": OptionSpec(
        "columns", "columns", _SUMMARY_DEFAULT,
        "Comma-separated list of enabled channel columns"),
    "summars-sort-by": OptionSpec(
        "sort_by", "sort", "SCID",
        "Sort channels by column, prefix with `-` to reverse"),
    "summars-exclude-states": OptionSpec(
        "exclude_states", "exclude", "",
        "Comma-separated channel states (or PUBLIC/PRIVATE, ONLINE/OFFLINE) to hide"),
    "summars-forwards": OptionSpec(
        "forwards", "int", 0, "Show settled forwards of the last x hours", is_hours=True),
    "summars-forwards-limit": OptionSpec(
        "forwards_limit", "int", 0, "Show only the last x forwards"),
    "summars-forwards-columns": OptionSpec(
        "forwards_columns", "forwards_columns",
        "resolved_time,in_alias,out_alias,in_sats,out_sats,fee_msats",
        "Comma-separated list of enabled forwards columns"),
    "summars-forwards-filter-amount-msat": OptionSpec(
        "forwards_filter_amount_msat", "int", -1,
        "Filter forwards smaller than or equal to x msat", minimum=-1),
    "summars-forwards-filter-fee-msat": OptionSpec(
        "forwards_filter_fee_msat", "int", -1,
        "Filter forwards with fees smaller than or equal to x msat", minimum=-1),
    "summars-forwards-alias": OptionSpec(
        "forwards_alias", "bool", True, "Show peer aliases instead of SCIDs in forwards"),
    "summars-pays": OptionSpec(
        "pays", "int", 0, "Show completed payments of the last x hours", is_hours=True),
    "summars-pays-limit": OptionSpec(
        "pays_limit", "int", 0, "Show only the last x payments"),
    "summars-pays-columns": OptionSpec(
        "pays_columns", "pays_columns",
        "completed_at,payment_hash,sats_sent,fee_sats,destination",
        "Comma-separated list of enabled pays columns"),
    "summars-invoices": OptionSpec(
        "invoices", "int", 0, "Show paid invoices of the last x hours", is_hours=True),
    "summars-invoices-limit": OptionSpec(
        "invoices_limit", "int", 0, "Show only the last x invoices"),
    "summars-invoices-columns": OptionSpec(
        "invoices_columns", "invoices_columns",
        "paid_at,label,sats_received,payment_hash",
        "Comma-separated list of enabled invoices columns"),
    "summars-invoices-filter-amount-msat": OptionSpec(
        "invoices_filter_amount_msat", "int", -1,
        "Filter invoices smaller than or equal to x msat", minimum=-1),
    "summars-max-description-length": OptionSpec(
        "max_description_length", "int", 30, "Truncate descriptions to x characters", minimum=5),
    "summars-max-label-length": OptionSpec(
        "max_label_length", "int", 30, "Truncate invoice labels to x characters", minimum=5),
    "summars-max-alias-length": OptionSpec(
        "max_alias_length", "int", 20, "Truncate aliases to x characters", minimum=5),
    "summars-refresh-alias": OptionSpec(
        "refresh_alias", "int", 24, "Refresh the alias cache every x hours", minimum=1),
    "summars-availability-interval": OptionSpec(
        "availability_interval", "int", 300,
        "How often in seconds peer availability is sampled", minimum=1),
    "summars-availability-window": OptionSpec(
        "availability_window", "int", 72,
        "Maximum smoothing window in hours for peer availability", minimum=1),
    "summars-page-size": OptionSpec(
        "page_size", "int", 1000, "Records fetched per list request", minimum=1),
    "summars-holdinvoice-support": OptionSpec(
        "holdinvoice_support", "bool", False, "Include settled hold invoices"),
    "summars-utf8": OptionSpec(
        "utf8", "bool", True, "Allow non-ascii characters in aliases"),
    "summars-json": OptionSpec(
        "json", "bool", False, "Return the report as JSON instead of tables"),
}

# Options only read at startup; passing them to `summars` has no effect
STARTUP_ONLY_OPTIONS: FrozenSet[str] = frozenset({
    "summars-refresh-alias",
    "summars-availability-interval",
    "summars-availability-window",
    "summars-holdinvoice-support",
})


def validate_option(name: str, value: Any) -> Any:
    """Convert and check a single option value; raises ConfigError."""
    spec = OPTION_FIELDS.get(name)
    if spec is None:
        raise ConfigError(f"option not found: {name}")

    if spec.kind == "int":
        return _parse_int(name, value, spec.minimum, spec.is_hours)
    if spec.kind == "bool":
        return _parse_bool(name, value)
    value = _parse_str(name, value)
    if spec.kind == "columns":
        return parse_summary_columns(value)
    if spec.kind == "sort":
        return parse_sort_by(value)
    if spec.kind == "exclude":
        return parse_exclude_states(value)
    if spec.kind == "forwards_columns":
        return parse_flow_columns(value, FORWARDS_COLUMNS, "forwards")
    if spec.kind == "pays_columns":
        return parse_flow_columns(value, PAYS_COLUMNS, "pays")
    if spec.kind == "invoices_columns":
        return parse_flow_columns(value, INVOICES_COLUMNS, "invoices")
    raise ConfigError(f"Unhandled option kind {spec.kind} for {name}")


# =============================================================================
# CONFIG
# =============================================================================

@dataclass
class Config:
    """
    Configuration container for cl-summars.

    All values can be set via plugin options at startup; report related ones
    can be overridden per `summars` call.
    """

    # Channel table
    columns: Tuple[SummaryColumn, ...] = field(
        default_factory=lambda: parse_summary_columns(_SUMMARY_DEFAULT))
    sort_by: SortOrder = field(default_factory=lambda: SortOrder(SummaryColumn.SCID))
    exclude_states: ExcludeStates = field(default_factory=ExcludeStates)

    # Forwards (window in hours, 0 = off)
    forwards: int = 0
    forwards_limit: int = 0
    forwards_columns: Tuple[str, ...] = ("resolved_time", "in_alias", "out_alias",
                                         "in_sats", "out_sats", "fee_msats")
    forwards_filter_amount_msat: int = -1
    forwards_filter_fee_msat: int = -1
    forwards_alias: bool = True

    # Pays
    pays: int = 0
    pays_limit: int = 0
    pays_columns: Tuple[str, ...] = ("completed_at", "payment_hash", "sats_sent",
                                     "fee_sats", "destination")

    # Invoices
    invoices: int = 0
    invoices_limit: int = 0
    invoices_columns: Tuple[str, ...] = ("paid_at", "label", "sats_received", "payment_hash")
    invoices_filter_amount_msat: int = -1

    # Display
    max_description_length: int = 30
    max_label_length: int = 30
    max_alias_length: int = 20
    utf8: bool = True
    json: bool = False

    # Background tasks
    refresh_alias: int = 24            # hours
    availability_interval: int = 300   # seconds
    availability_window: int = 72      # hours

    page_size: int = 1000
    holdinvoice_support: bool = False

    def set_option(self, name: str, value: Any) -> None:
        setattr(self, OPTION_FIELDS[name].field, validate_option(name, value))

    def load_options(self, options: Dict[str, Any]) -> None:
        """Apply startup options as delivered by pyln (name -> raw value)."""
        for name in OPTION_FIELDS:
            if name in options and options[name] is not None:
                self.set_option(name, options[name])

    def snapshot(self) -> 'ConfigSnapshot':
        """Immutable copy used for the duration of one report."""
        return ConfigSnapshot.from_config(self)


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration for one report.

    Per-call overrides are applied to the snapshot, never to the shared
    Config, so one `summars forwards=24` call does not change the next one.
    """
    columns: Tuple[SummaryColumn, ...]
    sort_by: SortOrder
    exclude_states: ExcludeStates

    forwards: int
    forwards_limit: int
    forwards_columns: Tuple[str, ...]
    forwards_filter_amount_msat: int
    forwards_filter_fee_msat: int
    forwards_alias: bool

    pays: int
    pays_limit: int
    pays_columns: Tuple[str, ...]

    invoices: int
    invoices_limit: int
    invoices_columns: Tuple[str, ...]
    invoices_filter_amount_msat: int

    max_description_length: int
    max_label_length: int
    max_alias_length: int
    utf8: bool
    json: bool

    refresh_alias: int
    availability_interval: int
    availability_window: int

    page_size: int
    holdinvoice_support: bool

    @classmethod
    def from_config(cls, config: Config) -> 'ConfigSnapshot':
        return cls(**{spec.field: getattr(config, spec.field) for spec in OPTION_FIELDS.values()})

    def with_overrides(self, args: Optional[Dict[str, Any]]) -> 'ConfigSnapshot':
        return validate_args(args or {}, self)


def validate_args(args: Dict[str, Any], snapshot: ConfigSnapshot) -> ConfigSnapshot:
    """
    Apply `summars` RPC arguments on top of a snapshot.

    Keys are option names (`summars-forwards`); the `summars-` prefix may be
    omitted. Unknown keys and startup-only options are rejected.
    """
    changes = {}
    for key, value in args.items():
        name = key if key.startswith(f"{PLUGIN_NAME}-") else f"{PLUGIN_NAME}-{key.replace('_', '-')}"
        if name not in OPTION_FIELDS:
            raise ConfigError(f"option not found: {key}")
        if name in STARTUP_ONLY_OPTIONS:
            raise ConfigError(f"{name} can only be set at startup")
        changes[OPTION_FIELDS[name].field] = validate_option(name, value)
    return replace(snapshot, **changes)
