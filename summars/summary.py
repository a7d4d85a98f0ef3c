"""
Report assembly for cl-summars

Builds one report: node info block, channel rows, and the windowed
forwards/pays/invoices tables.

Order of work for a single `summars` call:
1. getinfo, listpeers, listpeerchannels, listfunds
2. channel rows (exclusion filters, alias, availability)
3. one Window Accumulator per enabled domain, strictly one after another
4. latency probe sweep over the channel snapshot if the PING column is on
5. channel sort and assembly into a `Report`

Per-stage timings are logged at debug level.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pyln.client import Plugin, RpcError

from .aliases import AliasResolver
from .availability import AvailabilityView
from .config import ConfigSnapshot, ExcludeStates, SortOrder, SummaryColumn
from .flows import (
    DomainResult,
    ForwardsDomain,
    HoldInvoiceSource,
    HoldInvoicesDomain,
    InvoicesDomain,
    PaysDomain,
    merge_invoice_rows,
)
from .latency import LatencyProbeSweep, merge_latency
from .util import (
    ascii_only,
    format_btc,
    is_active_state,
    make_channel_flags,
    msat_to_sats,
    parse_msat,
    short_state,
)
from .window import (
    EventDomain,
    IntegrityViolation,
    ReportError,
    Totals,
    WindowAccumulator,
)


# Pending channels have no SCID and sort after every real one
PENDING_SCID: Tuple[int, int, int] = (999999999, 9999, 99)

# Reserves are only spendable in these states
SPENDABLE_STATES = frozenset({"CHANNELD_NORMAL", "CHANNELD_AWAITING_SPLICE"})


class StageTimer:
    """Logs elapsed milliseconds since report start at each stage."""

    def __init__(self, plugin: Plugin):
        self.plugin = plugin
        self.started = time.monotonic()

    def lap(self, stage: str) -> None:
        elapsed = int((time.monotonic() - self.started) * 1000)
        self.plugin.log(f"{stage}. Total: {elapsed}ms", level='debug')


# =============================================================================
# CHANNELS
# =============================================================================

@dataclass
class ChannelRow:
    out_sats: int
    in_sats: int
    total_sats: int
    scid: str
    scid_raw: Tuple[int, int, int]
    min_htlc: int
    max_htlc: int
    flag: str
    private: Optional[bool]
    offline: bool
    base: int
    ppm: int
    in_base: Optional[int]
    in_ppm: Optional[int]
    alias: str
    peer_id: str
    uptime: float
    htlcs: int
    state: str
    perc_us: float
    ping: int = 0

    def value(self, column: SummaryColumn) -> Any:
        return getattr(self, column.value.lower())

    def to_dict(self) -> Dict[str, Any]:
        return {column.value: self.value(column) for column in SummaryColumn}


def parse_scid(scid: Optional[str]) -> Tuple[int, int, int]:
    """'800000x1x0' -> (800000, 1, 0); block, then tx index, then output."""
    if not scid:
        return PENDING_SCID
    block, txindex, outnum = scid.split("x")
    return int(block), int(txindex), int(outnum)


def alias_sort_key(alias: str) -> str:
    return "".join(c for c in alias if c.isascii() and not c.isspace() and c != "@").lower()


def _missing_last(value: Optional[int]) -> float:
    return float("inf") if value is None else value


SORT_KEYS: Dict[SummaryColumn, Callable[[ChannelRow], Any]] = {
    SummaryColumn.OUT_SATS: lambda r: r.out_sats,
    SummaryColumn.IN_SATS: lambda r: r.in_sats,
    SummaryColumn.TOTAL_SATS: lambda r: r.total_sats,
    SummaryColumn.SCID: lambda r: r.scid_raw,
    SummaryColumn.MIN_HTLC: lambda r: r.min_htlc,
    SummaryColumn.MAX_HTLC: lambda r: r.max_htlc,
    SummaryColumn.FLAG: lambda r: r.flag,
    SummaryColumn.BASE: lambda r: r.base,
    SummaryColumn.PPM: lambda r: r.ppm,
    SummaryColumn.IN_BASE: lambda r: _missing_last(r.in_base),
    SummaryColumn.IN_PPM: lambda r: _missing_last(r.in_ppm),
    SummaryColumn.ALIAS: lambda r: alias_sort_key(r.alias),
    SummaryColumn.PEER_ID: lambda r: r.peer_id,
    SummaryColumn.UPTIME: lambda r: r.uptime,
    SummaryColumn.HTLCS: lambda r: r.htlcs,
    SummaryColumn.STATE: lambda r: r.state,
    SummaryColumn.PERC_US: lambda r: r.perc_us,
    SummaryColumn.PING: lambda r: r.ping,
}


def sort_channels(rows: List[ChannelRow], order: SortOrder) -> List[ChannelRow]:
    return sorted(rows, key=SORT_KEYS[order.column], reverse=order.reverse)


def is_excluded(channel: Dict[str, Any], exclude: ExcludeStates) -> bool:
    if short_state(channel.get("state")) in exclude.states:
        return True
    private = channel.get("private")
    if exclude.visibility == "PRIVATE" and private:
        return True
    if exclude.visibility == "PUBLIC" and private is False:
        return True
    connected = bool(channel.get("peer_connected"))
    if exclude.connectivity == "ONLINE" and connected:
        return True
    if exclude.connectivity == "OFFLINE" and not connected:
        return True
    return False


def _optional_msat(record: Dict[str, Any], key: str, domain: str = "channels") -> Optional[int]:
    try:
        return parse_msat(record.get(key))
    except ValueError as e:
        raise IntegrityViolation(domain, f"malformed {key}: {e}") from e


def _required_msat(channel: Dict[str, Any], key: str) -> int:
    value = _optional_msat(channel, key)
    if value is None:
        raise IntegrityViolation("channels", f"channel with {channel.get('peer_id')} has no {key}")
    return value


def channel_to_row(channel: Dict[str, Any], alias: str, avail: float, utf8: bool = True) -> ChannelRow:
    to_us = _required_msat(channel, "to_us_msat")
    total = _required_msat(channel, "total_msat")
    private = channel.get("private")
    offline = not channel.get("peer_connected", False)

    in_base = in_ppm = None
    remote = (channel.get("updates") or {}).get("remote")
    if remote:
        in_base = _optional_msat(remote, "fee_base_msat")
        in_ppm = remote.get("fee_proportional_millionths")

    scid = channel.get("short_channel_id")
    return ChannelRow(
        out_sats=msat_to_sats(to_us),
        in_sats=msat_to_sats(total - to_us),
        total_sats=msat_to_sats(total),
        scid=scid if scid else "PENDING",
        scid_raw=parse_scid(scid),
        min_htlc=msat_to_sats(_optional_msat(channel, "minimum_htlc_out_msat") or 0),
        max_htlc=msat_to_sats(_optional_msat(channel, "maximum_htlc_out_msat") or 0),
        flag=make_channel_flags(private, offline),
        private=private,
        offline=offline,
        base=_optional_msat(channel, "fee_base_msat") or 0,
        ppm=channel.get("fee_proportional_millionths") or 0,
        in_base=in_base,
        in_ppm=in_ppm,
        alias=alias if utf8 else ascii_only(alias),
        peer_id=channel["peer_id"],
        uptime=avail * 100.0 if avail >= 0 else -1.0,
        htlcs=len(channel.get("htlcs") or []),
        state=short_state(channel.get("state")),
        perc_us=(to_us / total * 100.0) if total > 0 else 0.0,
    )


# =============================================================================
# NODE INFO
# =============================================================================

def node_address(getinfo: Dict[str, Any]) -> str:
    """id@host:port from the first IPv4 announce address, any address, or a binding."""
    node_id = getinfo.get("id", "")
    addresses = getinfo.get("address") or []
    if addresses:
        chosen = next((a for a in addresses if a.get("type") == "ipv4"), addresses[0])
        return f"{node_id}@{chosen.get('address', 'missing address')}:{chosen.get('port', 9735)}"
    bindings = getinfo.get("binding") or []
    if bindings:
        bind = bindings[0]
        return f"{node_id}@{bind.get('address', 'missing address')}:{bind.get('port', 9735)}"
    return "No addresses found!"


@dataclass
class NodeInfo:
    address: str
    num_utxos: int
    utxo_amount_msat: int
    num_channels: int
    num_connected: int
    num_gossipers: int
    avail_out_msat: int
    avail_in_msat: int
    fees_collected_msat: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "num_utxos": self.num_utxos,
            "utxo_amount": f"{format_btc(self.utxo_amount_msat)} BTC",
            "num_channels": self.num_channels,
            "num_connected": self.num_connected,
            "num_gossipers": self.num_gossipers,
            "avail_out": f"{format_btc(self.avail_out_msat)} BTC",
            "avail_in": f"{format_btc(self.avail_in_msat)} BTC",
            "fees_collected": f"{format_btc(self.fees_collected_msat)} BTC",
        }


def spendable_sides(channel: Dict[str, Any]) -> Tuple[int, int]:
    """(outbound, inbound) msat above the respective reserves."""
    if channel.get("state") not in SPENDABLE_STATES:
        return 0, 0
    to_us = _required_msat(channel, "to_us_msat")
    total = _required_msat(channel, "total_msat")
    our_reserve = _required_msat(channel, "our_reserve_msat")
    their_reserve = _required_msat(channel, "their_reserve_msat")
    avail_out = max(to_us - our_reserve, 0)
    avail_in = max(total - to_us - their_reserve, 0)
    return avail_out, avail_in


def build_node_info(getinfo: Dict[str, Any], peers: List[Dict[str, Any]],
                    channels: List[Dict[str, Any]], outputs: List[Dict[str, Any]]) -> NodeInfo:
    utxo_amount = sum(_optional_msat(o, "amount_msat", "funds") or 0
                      for o in outputs if o.get("status") == "confirmed")
    active = [c for c in channels if is_active_state(c)]
    avail_out = avail_in = 0
    for channel in channels:
        out_side, in_side = spendable_sides(channel)
        avail_out += out_side
        avail_in += in_side
    return NodeInfo(
        address=node_address(getinfo),
        num_utxos=len(outputs),
        utxo_amount_msat=utxo_amount,
        num_channels=len(active),
        num_connected=sum(1 for c in active if c.get("peer_connected")),
        num_gossipers=sum(1 for p in peers if not p.get("num_channels")),
        avail_out_msat=avail_out,
        avail_in_msat=avail_in,
        fees_collected_msat=_optional_msat(getinfo, "fees_collected_msat", "getinfo") or 0,
    )


# =============================================================================
# REPORT
# =============================================================================

@dataclass
class Report:
    config: ConfigSnapshot
    info: NodeInfo
    channels: List[ChannelRow]
    channels_filtered: int = 0
    forwards: Optional[DomainResult] = None
    pays: Optional[DomainResult] = None
    invoices: Optional[DomainResult] = None
    totals: Totals = field(default_factory=Totals)

    def to_dict(self) -> Dict[str, Any]:
        def rows(result: Optional[DomainResult]) -> List[Dict[str, Any]]:
            return [] if result is None else [r.to_dict() for r in result.rows]

        def stats(result: Optional[DomainResult]) -> Optional[Dict[str, int]]:
            return None if result is None else result.filter_stats.to_dict()

        return {
            "info": self.info.to_dict(),
            "channels": [row.to_dict() for row in self.channels],
            "forwards": rows(self.forwards),
            "pays": rows(self.pays),
            "invoices": rows(self.invoices),
            "totals": self.totals.to_dict(),
            "filter_stats": {
                "channels": self.channels_filtered,
                "forwards": stats(self.forwards),
                "pays": stats(self.pays),
                "invoices": stats(self.invoices),
            },
        }


def run_domain(domain: EventDomain, hours: int, limit: int, now: int,
               totals: Totals, page_size: int) -> DomainResult:
    """Walk one domain through a fresh accumulator and finalize it."""
    accumulator = WindowAccumulator(domain, now - hours * 3600, now, limit, totals)
    accumulator.walk(page_size)
    return DomainResult(
        rows=accumulator.finalize(),
        filter_stats=accumulator.filter_stats,
        pages_walked=accumulator.pages_walked,
    )


class ReportBuilder:
    """
    Builds reports against a live node.

    Args:
        plugin: pyln Plugin (rpc + log)
        resolver: Shared alias resolver
        availability: Read-only view of the availability store
        holdinvoices: Paging bookkeeping for hold invoices, kept across reports
        probe: Blocking callable(peer_id) used by the latency sweep
    """

    def __init__(self, plugin: Plugin, resolver: AliasResolver, availability: AvailabilityView,
                 holdinvoices: HoldInvoiceSource, probe: Callable[[str], Any]):
        self.plugin = plugin
        self.resolver = resolver
        self.availability = availability
        self.holdinvoices = holdinvoices
        self.probe = probe

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            return self.plugin.rpc.call(method, payload or {})
        except (RpcError, OSError) as e:
            raise ReportError("channels", method, e) from e

    def build(self, cfg: ConfigSnapshot, now: Optional[int] = None) -> Report:
        now = int(time.time()) if now is None else now
        timer = StageTimer(self.plugin)

        getinfo = self._call("getinfo")
        timer.lap("Getinfo")
        peers = self._call("listpeers").get("peers", [])
        timer.lap("Listpeers")
        channels = self._call("listpeerchannels").get("channels", [])
        timer.lap("Listpeerchannels")
        outputs = self._call("listfunds", {"spent": False}).get("outputs", [])
        timer.lap("Listfunds")

        info = build_node_info(getinfo, peers, channels, outputs)

        rows = []
        excluded = 0
        for channel in channels:
            if is_excluded(channel, cfg.exclude_states):
                excluded += 1
                continue
            try:
                alias = self.resolver.display_name(channel["peer_id"])
            except (RpcError, OSError) as e:
                raise ReportError("channels", "resolve_alias", e) from e
            avail = self.availability.get_avail(channel["peer_id"])
            rows.append(channel_to_row(channel, alias, avail, cfg.utf8))
        timer.lap("First summary-loop")

        report = Report(config=cfg, info=info, channels=rows, channels_filtered=excluded)

        if cfg.forwards > 0:
            chanmap = {c["short_channel_id"]: c["peer_id"]
                       for c in channels if c.get("short_channel_id")}
            domain = ForwardsDomain(self.plugin.rpc, cfg, chanmap, self.resolver)
            report.forwards = run_domain(domain, cfg.forwards, cfg.forwards_limit, now,
                                         report.totals, cfg.page_size)
            timer.lap(f"Forwards window ({report.forwards.pages_walked} pages)")

        if cfg.pays > 0:
            domain = PaysDomain(self.plugin.rpc, cfg, getinfo.get("id", ""), self.resolver,
                                want_description="description" in cfg.pays_columns)
            report.pays = run_domain(domain, cfg.pays, cfg.pays_limit, now,
                                     report.totals, cfg.page_size)
            timer.lap(f"Pays window ({report.pays.pages_walked} pages)")

        if cfg.invoices > 0:
            report.invoices = self._invoices(cfg, now, report.totals)
            timer.lap(f"Invoices window ({report.invoices.pages_walked} pages)")

        if SummaryColumn.PING in cfg.columns:
            latencies = LatencyProbeSweep(self.probe).run(row.peer_id for row in rows)
            merge_latency(rows, latencies)
            timer.lap("Ping sweep")

        report.channels = sort_channels(rows, cfg.sort_by)
        timer.lap("Sort summary")
        return report

    def _invoices(self, cfg: ConfigSnapshot, now: int, totals: Totals) -> DomainResult:
        result = run_domain(InvoicesDomain(self.plugin.rpc, cfg), cfg.invoices,
                            cfg.invoices_limit, now, totals, cfg.page_size)
        if not cfg.holdinvoice_support:
            return result

        accumulator = WindowAccumulator(HoldInvoicesDomain(self.plugin.rpc, cfg),
                                        now - cfg.invoices * 3600, now,
                                        cfg.invoices_limit, totals)
        self.holdinvoices.walk(accumulator, cfg.page_size, log=self.plugin.log)
        held = accumulator.finalize()
        return DomainResult(
            rows=merge_invoice_rows(result.rows, held, cfg.invoices_limit),
            filter_stats=result.filter_stats.merge(accumulator.filter_stats),
            pages_walked=result.pages_walked + accumulator.pages_walked,
        )
