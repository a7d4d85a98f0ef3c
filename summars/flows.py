"""
Event domains for cl-summars

Forwards, pays, invoices and hold invoices implemented once each against
the generic `EventDomain` interface of the window accumulator.

Every domain reads its records through lightningd's `updated` index:
    wait {subsystem, indexname: "updated", nextvalue: 0}   -> tip
    list<domain> {index: "updated", start, limit}          -> one page

Hold invoices come from the holdinvoice plugin, which only supports forward
paging by id. They are walked by `HoldInvoiceSource` which keeps a
`PagingIndex` across reports so old, fully settled history is not re-read.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from pyln.client import RpcError

from .aliases import AliasResolver, NO_ALIAS_SET, NODE_GOSSIP_MISS
from .util import ascii_only, msat_to_sats, parse_msat
from .window import (
    EventDomain,
    FilterStats,
    IntegrityViolation,
    ReportError,
    Totals,
    WindowAccumulator,
    WindowBoundary,
    effective_fee_ppm,
)


def tip_index(rpc, subsystem: str) -> int:
    """Current `updated` index of a lightningd subsystem (0 if never used)."""
    result = rpc.call("wait", {
        "subsystem": subsystem,
        "indexname": "updated",
        "nextvalue": 0,
    })
    return int(result.get("updated", 0))


# =============================================================================
# ROWS
# =============================================================================

@dataclass
class ForwardRow:
    """One settled forward as shown in the forwards table."""
    received_time: float
    resolved_time: float
    in_channel: str
    out_channel: str
    in_alias: str
    out_alias: str
    in_msat: int
    out_msat: int
    fee_msat: int
    eff_fee_ppm: int

    @property
    def timestamp(self) -> float:
        return self.resolved_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received_time": self.received_time,
            "resolved_time": self.resolved_time,
            "in_channel": self.in_channel,
            "out_channel": self.out_channel,
            "in_alias": self.in_alias,
            "out_alias": self.out_alias,
            "in_sats": msat_to_sats(self.in_msat),
            "in_msats": self.in_msat,
            "out_sats": msat_to_sats(self.out_msat),
            "out_msats": self.out_msat,
            "fee_sats": msat_to_sats(self.fee_msat),
            "fee_msats": self.fee_msat,
            "eff_fee_ppm": self.eff_fee_ppm,
        }


@dataclass
class PayRow:
    """One completed outgoing payment."""
    completed_at: int
    payment_hash: str
    destination_id: str
    destination: str
    description: str
    preimage: str
    amount_msat: int
    amount_sent_msat: int

    @property
    def timestamp(self) -> int:
        return self.completed_at

    @property
    def fee_msat(self) -> int:
        return self.amount_sent_msat - self.amount_msat

    def to_dict(self) -> Dict[str, Any]:
        return {
            "completed_at": self.completed_at,
            "payment_hash": self.payment_hash,
            "sats_requested": msat_to_sats(self.amount_msat),
            "msats_requested": self.amount_msat,
            "sats_sent": msat_to_sats(self.amount_sent_msat),
            "msats_sent": self.amount_sent_msat,
            "fee_sats": msat_to_sats(self.fee_msat),
            "fee_msats": self.fee_msat,
            "destination": self.destination,
            "description": self.description,
            "preimage": self.preimage,
        }


@dataclass
class InvoiceRow:
    """One paid invoice, or one settled hold invoice."""
    paid_at: int
    label: str
    amount_received_msat: int
    description: str
    payment_hash: str
    preimage: str

    @property
    def timestamp(self) -> int:
        return self.paid_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paid_at": self.paid_at,
            "label": self.label,
            "sats_received": msat_to_sats(self.amount_received_msat),
            "msats_received": self.amount_received_msat,
            "description": self.description,
            "payment_hash": self.payment_hash,
            "preimage": self.preimage,
        }


# =============================================================================
# FORWARDS
# =============================================================================

class ForwardsDomain(EventDomain):
    """
    Settled forwards, windowed on `resolved_time`.

    Filters: forwards with in_msat <= filter_amount or fee <= filter_fee
    (-1 disables a filter since amounts are never negative).
    """

    name = "forwards"
    boundary = WindowBoundary.AFTER_CUTOFF

    def __init__(self, rpc, config, chanmap: Mapping[str, str],
                 resolver: Optional[AliasResolver] = None):
        """
        Args:
            rpc: Object exposing call(method, payload)
            config: ConfigSnapshot for this report
            chanmap: short_channel_id -> peer_id of our channels
            resolver: Alias resolver, required when forwards_alias is on
        """
        self.rpc = rpc
        self.config = config
        self.chanmap = chanmap
        self.resolver = resolver

    def tip(self) -> int:
        return tip_index(self.rpc, "forwards")

    def fetch_page(self, start: int, limit: int) -> List[Dict[str, Any]]:
        return self.rpc.call("listforwards", {
            "status": "settled",
            "index": "updated",
            "start": start,
            "limit": limit,
        }).get("forwards", [])

    def timestamp_of(self, record: Dict[str, Any]) -> Optional[float]:
        if record.get("status") != "settled":
            return None
        resolved_time = record.get("resolved_time")
        if resolved_time is None:
            raise IntegrityViolation(self.name, "settled forward without resolved_time",
                                     record.get("updated_index"))
        return float(resolved_time)

    def _channel_alias(self, scid: str) -> str:
        if not self.config.forwards_alias or self.resolver is None:
            return scid
        peer_id = self.chanmap.get(scid)
        if peer_id is None:
            return scid
        alias = self.resolver.resolve(peer_id)
        if alias in (NO_ALIAS_SET, NODE_GOSSIP_MISS):
            return scid
        return alias if self.config.utf8 else ascii_only(alias)

    def derive(self, record: Dict[str, Any], index: int) -> ForwardRow:
        in_msat = parse_msat(record.get("in_msat"))
        out_msat = parse_msat(record.get("out_msat"))
        fee_msat = parse_msat(record.get("fee_msat"))
        out_channel = record.get("out_channel")

        for field_name, value in (("in_msat", in_msat), ("out_msat", out_msat),
                                  ("fee_msat", fee_msat), ("out_channel", out_channel)):
            if value is None:
                raise IntegrityViolation(self.name, f"settled forward without {field_name}", index)

        in_channel = record["in_channel"]
        return ForwardRow(
            received_time=float(record.get("received_time", 0.0)),
            resolved_time=float(record["resolved_time"]),
            in_channel=in_channel,
            out_channel=out_channel,
            in_alias=self._channel_alias(in_channel),
            out_alias=self._channel_alias(out_channel),
            in_msat=in_msat,
            out_msat=out_msat,
            fee_msat=fee_msat,
            eff_fee_ppm=effective_fee_ppm(in_msat, out_msat, self.name, index),
        )

    def is_filtered(self, row: ForwardRow) -> bool:
        return (row.in_msat <= self.config.forwards_filter_amount_msat
                or row.fee_msat <= self.config.forwards_filter_fee_msat)

    def count_filtered(self, stats: FilterStats, row: ForwardRow) -> None:
        stats.add(amount_msat=row.in_msat, fee_msat=row.fee_msat)

    def accumulate(self, totals: Totals, row: ForwardRow) -> None:
        totals.add("forwards_amount_in_msat", row.in_msat)
        totals.add("forwards_amount_out_msat", row.out_msat)
        totals.add("forwards_fees_msat", row.fee_msat)


# =============================================================================
# PAYS
# =============================================================================

class PaysDomain(EventDomain):
    """
    Completed payments, windowed on `completed_at` truncated to whole seconds.

    Payments to our own node (e.g. circular rebalances) are filtered and
    reported in the filter stats instead of the table.
    """

    name = "pays"
    boundary = WindowBoundary.WHOLE_SECONDS

    def __init__(self, rpc, config, my_node_id: str,
                 resolver: Optional[AliasResolver] = None,
                 want_description: bool = False):
        self.rpc = rpc
        self.config = config
        self.my_node_id = my_node_id
        self.resolver = resolver
        self.want_description = want_description

    def tip(self) -> int:
        return tip_index(self.rpc, "sendpays")

    def fetch_page(self, start: int, limit: int) -> List[Dict[str, Any]]:
        return self.rpc.call("listpays", {
            "status": "complete",
            "index": "updated",
            "start": start,
            "limit": limit,
        }).get("pays", [])

    def timestamp_of(self, record: Dict[str, Any]) -> Optional[float]:
        if record.get("status") != "complete":
            return None
        completed_at = record.get("completed_at")
        if completed_at is None:
            raise IntegrityViolation(self.name, "complete payment without completed_at",
                                     record.get("updated_index"))
        return float(completed_at)

    def _decode(self, record: Dict[str, Any], index: int) -> Dict[str, Any]:
        invstring = record.get("bolt11") or record.get("bolt12")
        if invstring is None:
            raise IntegrityViolation(self.name, "payment without bolt11 or bolt12 to decode", index)
        return self.rpc.call("decode", {"string": invstring})

    def derive(self, record: Dict[str, Any], index: int) -> PayRow:
        amount_sent_msat = parse_msat(record.get("amount_sent_msat"))
        if amount_sent_msat is None:
            raise IntegrityViolation(self.name, "complete payment without amount_sent_msat", index)

        amount_msat = parse_msat(record.get("amount_msat"))
        destination_id = record.get("destination")
        description = record.get("description")

        decoded = None
        if amount_msat is None or destination_id is None or \
                (self.want_description and description is None):
            decoded = self._decode(record, index)
            if amount_msat is None:
                amount_msat = parse_msat(decoded.get("amount_msat") or decoded.get("invoice_amount_msat"))
            if destination_id is None:
                destination_id = decoded.get("payee") or decoded.get("invoice_node_id")
            if description is None:
                description = decoded.get("description") or decoded.get("offer_description")

        if amount_msat is None:
            raise IntegrityViolation(self.name, "payment amount unknown after decode", index)
        if amount_sent_msat < amount_msat:
            raise IntegrityViolation(
                self.name,
                f"amount_sent_msat ({amount_sent_msat}) is smaller than amount_msat ({amount_msat})",
                index,
            )

        destination = destination_id or ""
        if destination_id and destination_id != self.my_node_id and self.resolver is not None:
            destination = self.resolver.display_name(destination_id)
            if not self.config.utf8:
                destination = ascii_only(destination)

        return PayRow(
            completed_at=int(record["completed_at"]),
            payment_hash=record.get("payment_hash", ""),
            destination_id=destination_id or "",
            destination=destination,
            description=description or "",
            preimage=record.get("preimage", ""),
            amount_msat=amount_msat,
            amount_sent_msat=amount_sent_msat,
        )

    def is_filtered(self, row: PayRow) -> bool:
        return row.destination_id == self.my_node_id

    def count_filtered(self, stats: FilterStats, row: PayRow) -> None:
        stats.add(amount_msat=row.amount_msat, sent_msat=row.amount_sent_msat,
                  fee_msat=row.fee_msat)

    def accumulate(self, totals: Totals, row: PayRow) -> None:
        totals.add("pays_amount_msat", row.amount_msat)
        totals.add("pays_amount_sent_msat", row.amount_sent_msat)
        totals.add("pays_fees_msat", row.fee_msat)


# =============================================================================
# INVOICES
# =============================================================================

class InvoicesDomain(EventDomain):
    """Paid invoices, windowed on `paid_at`."""

    name = "invoices"
    boundary = WindowBoundary.AFTER_CUTOFF

    def __init__(self, rpc, config):
        self.rpc = rpc
        self.config = config

    def tip(self) -> int:
        return tip_index(self.rpc, "invoices")

    def fetch_page(self, start: int, limit: int) -> List[Dict[str, Any]]:
        return self.rpc.call("listinvoices", {
            "index": "updated",
            "start": start,
            "limit": limit,
        }).get("invoices", [])

    def timestamp_of(self, record: Dict[str, Any]) -> Optional[float]:
        if record.get("status") != "paid":
            return None
        paid_at = record.get("paid_at")
        return None if paid_at is None else float(paid_at)

    def derive(self, record: Dict[str, Any], index: int) -> InvoiceRow:
        received = parse_msat(record.get("amount_received_msat"))
        if received is None:
            raise IntegrityViolation(self.name, "paid invoice without amount_received_msat", index)
        return InvoiceRow(
            paid_at=int(record["paid_at"]),
            label=record.get("label", ""),
            amount_received_msat=received,
            description=record.get("description", ""),
            payment_hash=record.get("payment_hash", ""),
            preimage=record.get("payment_preimage", ""),
        )

    def is_filtered(self, row: InvoiceRow) -> bool:
        return row.amount_received_msat <= self.config.invoices_filter_amount_msat

    def count_filtered(self, stats: FilterStats, row: InvoiceRow) -> None:
        stats.add(amount_msat=row.amount_received_msat)

    def accumulate(self, totals: Totals, row: InvoiceRow) -> None:
        totals.add("invoices_amount_received_msat", row.amount_received_msat)


# =============================================================================
# HOLD INVOICES
# =============================================================================

HOLDINVOICE_LABEL = "Holdinvoice"


class HoldInvoicesDomain(InvoicesDomain):
    """
    Settled hold invoices from the holdinvoice plugin.

    Shares filters and totals with regular invoices. Records are keyed by
    their `id`, which the plugin assigns in increasing order.
    """

    name = "holdinvoices"

    def tip(self) -> int:
        raise NotImplementedError("hold invoices are paged forward by HoldInvoiceSource")

    def fetch_page(self, start: int, limit: int) -> List[Dict[str, Any]]:
        return self.rpc.call("holdinvoicelookup", {
            "constraints": {"index_start": start, "limit": limit},
        }).get("holdinvoices", [])

    def index_of(self, record: Dict[str, Any]) -> int:
        return int(record["id"])

    def timestamp_of(self, record: Dict[str, Any]) -> Optional[float]:
        if str(record.get("state", "")).lower() != "settled":
            return None
        paid_at = record.get("paid_at")
        return None if paid_at is None else float(paid_at)

    def derive(self, record: Dict[str, Any], index: int) -> InvoiceRow:
        amount = parse_msat(record.get("amount_msat"))
        if amount is None:
            raise IntegrityViolation(self.name, "settled hold invoice without amount_msat", index)
        return InvoiceRow(
            paid_at=int(record["paid_at"]),
            label=HOLDINVOICE_LABEL,
            amount_received_msat=amount,
            description=record.get("description") or "",
            payment_hash=record.get("payment_hash", ""),
            preimage=record.get("preimage") or "",
        )


@dataclass
class PagingIndex:
    """Where the next hold invoice walk starts, and the cutoff it was made for."""
    start: int = 0
    timestamp: int = 0


class HoldInvoiceSource:
    """
    Forward pager for hold invoices with bookkeeping shared across reports.

    After each walk `start` is moved to the lowest id that can still matter
    next time: the lowest id seen inside the window or still unsettled, or
    the last id seen if nothing qualifies. A report with a wider window than
    the previous one resets the index to 0.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._index = PagingIndex()

    @property
    def index(self) -> PagingIndex:
        with self._lock:
            return PagingIndex(self._index.start, self._index.timestamp)

    def walk(self, accumulator: WindowAccumulator, page_size: int,
             log: Optional[Callable[..., None]] = None) -> WindowAccumulator:
        domain = accumulator.domain
        cutoff = accumulator.cutoff

        with self._lock:
            if self._index.timestamp > cutoff:
                self._index = PagingIndex()
                if log:
                    log("holdinvoice index: window increased, resetting index", level='debug')
            start = self._index.start

        next_start: Optional[int] = None
        last_seen: Optional[int] = None
        current = start
        while True:
            try:
                page = domain.fetch_page(current, page_size)
            except (RpcError, OSError) as e:
                raise ReportError(domain.name, "fetch_page", e) from e
            accumulator.process_page(page)
            for record in page:
                idx = domain.index_of(record)
                last_seen = idx if last_seen is None else max(last_seen, idx)
                timestamp = domain.timestamp_of(record)
                if timestamp is None or timestamp > cutoff:
                    next_start = idx if next_start is None else min(next_start, idx)
            if len(page) < page_size or last_seen is None:
                break
            current = last_seen + 1

        if next_start is None:
            next_start = last_seen if last_seen is not None else start

        with self._lock:
            self._index = PagingIndex(start=next_start, timestamp=cutoff)
        return accumulator


def merge_invoice_rows(invoices: List[InvoiceRow], holdinvoices: List[InvoiceRow],
                       limit: int) -> List[InvoiceRow]:
    """Merge two finalized invoice lists, sort by paid_at and reapply the limit."""
    rows = sorted(invoices + holdinvoices, key=lambda row: row.timestamp)
    if limit > 0 and len(rows) > limit:
        rows = rows[-limit:]
    return rows


@dataclass
class DomainResult:
    """Finalized output of one domain for the report assembler."""
    rows: List[Any] = field(default_factory=list)
    filter_stats: FilterStats = field(default_factory=FilterStats)
    pages_walked: int = 0
