"""
Text rendering of a cl-summars report using prettytable.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from prettytable import PrettyTable

from .config import ConfigSnapshot, SummaryColumn
from .flows import DomainResult
from .latency import PING_NOT_ATTEMPTED
from .summary import ChannelRow, Report
from .util import format_btc, format_sats, msat_to_sats
from .window import FilterStats, Totals


TRUNCATE_SUFFIX = "[..]"

RIGHT_ALIGNED_CHANNEL_COLUMNS = frozenset({
    SummaryColumn.OUT_SATS, SummaryColumn.IN_SATS, SummaryColumn.TOTAL_SATS,
    SummaryColumn.MIN_HTLC, SummaryColumn.MAX_HTLC, SummaryColumn.BASE,
    SummaryColumn.IN_BASE, SummaryColumn.PPM, SummaryColumn.IN_PPM,
    SummaryColumn.UPTIME, SummaryColumn.PERC_US, SummaryColumn.HTLCS,
    SummaryColumn.PING,
})

THOUSANDS_CHANNEL_COLUMNS = frozenset({
    SummaryColumn.OUT_SATS, SummaryColumn.IN_SATS, SummaryColumn.TOTAL_SATS,
    SummaryColumn.MIN_HTLC, SummaryColumn.MAX_HTLC, SummaryColumn.BASE,
    SummaryColumn.IN_BASE, SummaryColumn.PPM, SummaryColumn.IN_PPM,
})

AMOUNT_FLOW_COLUMNS = frozenset({
    "in_sats", "in_msats", "out_sats", "out_msats", "fee_sats", "fee_msats",
    "eff_fee_ppm", "sats_requested", "msats_requested", "sats_sent", "msats_sent",
    "sats_received", "msats_received",
})

TIME_FLOW_COLUMNS = frozenset({"received_time", "resolved_time", "completed_at", "paid_at"})


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max(max_length - len(TRUNCATE_SUFFIX), 0)] + TRUNCATE_SUFFIX


def format_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


# =============================================================================
# CHANNELS
# =============================================================================

def format_channel_cell(row: ChannelRow, column: SummaryColumn, cfg: ConfigSnapshot) -> str:
    value = row.value(column)
    if column is SummaryColumn.UPTIME:
        return "N/A" if value < 0 else f"{round(value)}%"
    if column is SummaryColumn.PERC_US:
        return f"{value:.1f}%"
    if column is SummaryColumn.PING:
        return "N/A" if value == PING_NOT_ATTEMPTED else str(value)
    if column is SummaryColumn.ALIAS:
        return truncate(value, cfg.max_alias_length)
    if column in THOUSANDS_CHANNEL_COLUMNS:
        return "N/A" if value is None else format_sats(value)
    return str(value)


def render_channels(rows: Sequence[ChannelRow], cfg: ConfigSnapshot, filtered: int = 0) -> str:
    table = PrettyTable()
    table.field_names = [c.value for c in cfg.columns]
    for column in cfg.columns:
        if column in RIGHT_ALIGNED_CHANNEL_COLUMNS:
            table.align[column.value] = "r"
        elif column in (SummaryColumn.ALIAS, SummaryColumn.PEER_ID, SummaryColumn.SCID):
            table.align[column.value] = "l"
    for row in rows:
        table.add_row([format_channel_cell(row, c, cfg) for c in cfg.columns])

    result = table.get_string()
    if filtered > 0:
        result += f"\n {plural(filtered, 'channel')} filtered."
    return result


def render_info(report: Report) -> str:
    info = report.info
    return "\n".join([
        f"address={info.address}",
        f"num_utxos={info.num_utxos}",
        f"utxo_amount={format_btc(info.utxo_amount_msat)} BTC",
        f"num_channels={info.num_channels}",
        f"num_connected={info.num_connected}",
        f"num_gossipers={info.num_gossipers}",
        f"avail_out={format_btc(info.avail_out_msat)} BTC",
        f"avail_in={format_btc(info.avail_in_msat)} BTC",
        f"fees_collected={format_btc(info.fees_collected_msat)} BTC",
        "channels_flags=P:private O:offline E:unknown",
    ])


# =============================================================================
# FORWARDS / PAYS / INVOICES
# =============================================================================

def format_flow_cell(name: str, value: Any, cfg: ConfigSnapshot) -> str:
    if name in TIME_FLOW_COLUMNS:
        return format_timestamp(value)
    if name in AMOUNT_FLOW_COLUMNS:
        return format_sats(value)
    if name in ("in_alias", "out_alias", "destination"):
        return truncate(str(value), cfg.max_alias_length)
    if name == "description":
        return truncate(" ".join(str(value).split()), cfg.max_description_length)
    if name == "label":
        return truncate(str(value), cfg.max_label_length)
    return str(value)


def render_flow_table(title: str, columns: Sequence[str], rows: Iterable[Any],
                      cfg: ConfigSnapshot, footers: List[str]) -> str:
    table = PrettyTable()
    table.title = title
    table.field_names = list(columns)
    for name in columns:
        if name in AMOUNT_FLOW_COLUMNS:
            table.align[name] = "r"
    for row in rows:
        values: Dict[str, Any] = row.to_dict()
        table.add_row([format_flow_cell(name, values[name], cfg) for name in columns])
    result = table.get_string()
    for footer in footers:
        result += f"\n{footer}"
    return result


def window_title(name: str, hours: int, limit: int) -> str:
    return f"{name} (last {hours}h, limit: {limit if limit > 0 else 'off'})"


def forwards_footers(stats: FilterStats, totals: Totals, hours: int) -> List[str]:
    footers = []
    if stats.count > 0:
        footers.append(
            f"Filtered {plural(stats.count, 'forward')} with "
            f"{format_sats(msat_to_sats(stats.amount_msat))} sats routed and "
            f"{format_sats(stats.fee_msat)} msat fees."
        )
    if totals.forwards_amount_in_msat is not None:
        footers.append(
            f"Total forwards stats in the last {hours}h: "
            f"{format_sats(msat_to_sats(totals.forwards_amount_in_msat))} in_sats "
            f"{format_sats(msat_to_sats(totals.forwards_amount_out_msat))} out_sats "
            f"{format_sats(totals.forwards_fees_msat)} fee_msats"
        )
    return footers


def pays_footers(stats: FilterStats, totals: Totals, hours: int) -> List[str]:
    footers = []
    if stats.count > 0:
        footers.append(
            f"Filtered {plural(stats.count, 'payment')} to self with "
            f"{format_sats(msat_to_sats(stats.sent_msat))} sats sent and "
            f"{format_sats(stats.fee_msat)} msat fees."
        )
    if totals.pays_amount_msat is not None:
        footers.append(
            f"Total pays stats in the last {hours}h: "
            f"{format_sats(msat_to_sats(totals.pays_amount_msat))} sats_requested "
            f"{format_sats(msat_to_sats(totals.pays_amount_sent_msat))} sats_sent "
            f"{format_sats(msat_to_sats(totals.pays_fees_msat))} fee_sats"
        )
    return footers


def invoices_footers(stats: FilterStats, totals: Totals, hours: int) -> List[str]:
    footers = []
    if stats.count > 0:
        footers.append(
            f"Filtered {plural(stats.count, 'invoice')} with "
            f"{format_sats(msat_to_sats(stats.amount_msat))} sats total."
        )
    if totals.invoices_amount_received_msat is not None:
        footers.append(
            f"Total invoices stats in the last {hours}h: "
            f"{format_sats(msat_to_sats(totals.invoices_amount_received_msat))} sats_received"
        )
    return footers


def _flow_section(name: str, result: Optional[DomainResult], hours: int, limit: int,
                  columns: Sequence[str], footers, report: Report) -> Optional[str]:
    if result is None:
        return None
    return render_flow_table(
        window_title(name, hours, limit), columns, result.rows, report.config,
        footers(result.filter_stats, report.totals, hours),
    )


def render_report(report: Report) -> str:
    cfg = report.config
    sections = [
        render_info(report),
        render_channels(report.channels, cfg, report.channels_filtered),
    ]
    for section in (
        _flow_section("forwards", report.forwards, cfg.forwards, cfg.forwards_limit,
                      cfg.forwards_columns, forwards_footers, report),
        _flow_section("pays", report.pays, cfg.pays, cfg.pays_limit,
                      cfg.pays_columns, pays_footers, report),
        _flow_section("invoices", report.invoices, cfg.invoices, cfg.invoices_limit,
                      cfg.invoices_columns, invoices_footers, report),
    ):
        if section is not None:
            sections.append(section)
    return "\n\n".join(sections)
