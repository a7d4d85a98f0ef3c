"""
Window Accumulator for cl-summars

Converts a paged stream of one event domain (forwards, pays, invoices, hold
invoices) into a bounded, deduplicated and sorted result with running totals
and filter statistics.

The accumulator is generic: everything domain specific (which records are
settled, which timestamp counts, how rows are derived and filtered, which
totals they feed) lives in an `EventDomain` implementation in flows.py.

Lifecycle of one accumulator (created fresh per report):
    WALKING     pages are consumed, records are accepted/filtered/skipped
    FINALIZED   limit and sort have been applied, no more records accepted
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pyln.client import RpcError

from .pager import reverse_pages


class IntegrityViolation(Exception):
    """
    A settled record broke an invariant the node guarantees.

    Examples: a settled forward without out_msat, or in_msat < out_msat.
    Raised instead of crashing so the report can fail with a clear message.
    """

    def __init__(self, domain: str, message: str, index: Optional[int] = None):
        self.domain = domain
        self.index = index
        where = f"{domain}[{index}]" if index is not None else domain
        super().__init__(f"Data integrity violation in {where}: {message}")


class ReportError(Exception):
    """A report stage failed; carries the domain and stage for the caller."""

    def __init__(self, domain: str, stage: str, cause: Exception):
        self.domain = domain
        self.stage = stage
        self.cause = cause
        super().__init__(f"Error in {domain} ({stage}): {cause}")


class WindowPhase(Enum):
    WALKING = "walking"
    FINALIZED = "finalized"


class WindowBoundary(Enum):
    """
    How a settlement timestamp is compared against the cutoff.

    AFTER_CUTOFF: keep records with timestamp > cutoff
    WHOLE_SECONDS: truncate the timestamp to whole seconds first, which also
                   discards records settled within the cutoff second
    """
    AFTER_CUTOFF = "after_cutoff"
    WHOLE_SECONDS = "whole_seconds"

    def contains(self, timestamp: float, cutoff: int) -> bool:
        if self is WindowBoundary.WHOLE_SECONDS:
            return int(timestamp) > cutoff
        return timestamp > cutoff


def effective_fee_ppm(in_msat: int, out_msat: int, domain: str = "forwards",
                      index: Optional[int] = None) -> int:
    """
    Effective fee rate of a forward in parts-per-million of the outgoing amount.

    ceil((in - out) / out * 1_000_000), computed in integers so that e.g.
    in=1000, out=900 yields 111112 and not a float rounding artefact.
    """
    if out_msat <= 0:
        raise IntegrityViolation(domain, f"out_msat must be positive, got {out_msat}", index)
    if in_msat < out_msat:
        raise IntegrityViolation(
            domain, f"in_msat ({in_msat}) is smaller than out_msat ({out_msat})", index
        )
    return -(-(in_msat - out_msat) * 1_000_000 // out_msat)


@dataclass
class FilterStats:
    """Count and sums of records removed by business filters."""
    count: int = 0
    amount_msat: int = 0
    sent_msat: int = 0
    fee_msat: int = 0

    def add(self, amount_msat: int = 0, sent_msat: int = 0, fee_msat: int = 0) -> None:
        self.count += 1
        self.amount_msat += amount_msat
        self.sent_msat += sent_msat
        self.fee_msat += fee_msat

    def merge(self, other: 'FilterStats') -> 'FilterStats':
        return FilterStats(
            count=self.count + other.count,
            amount_msat=self.amount_msat + other.amount_msat,
            sent_msat=self.sent_msat + other.sent_msat,
            fee_msat=self.fee_msat + other.fee_msat,
        )

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class Totals:
    """
    Running totals across all domains of one report.

    Every field stays None until a record contributes to it, so "no pays in
    the window" and "pays summing to zero" remain distinguishable.
    """
    forwards_amount_in_msat: Optional[int] = None
    forwards_amount_out_msat: Optional[int] = None
    forwards_fees_msat: Optional[int] = None
    pays_amount_msat: Optional[int] = None
    pays_amount_sent_msat: Optional[int] = None
    pays_fees_msat: Optional[int] = None
    invoices_amount_received_msat: Optional[int] = None

    def add(self, name: str, amount_msat: int) -> None:
        current = getattr(self, name)
        setattr(self, name, amount_msat if current is None else current + amount_msat)

    def to_dict(self) -> Dict[str, Optional[int]]:
        return asdict(self)


class EventDomain:
    """
    Interface every event domain implements.

    A domain is both the event source (tip/fetch_page) and the rule set
    applied to its records by the accumulator.
    """

    name = "events"
    boundary = WindowBoundary.AFTER_CUTOFF

    def tip(self) -> int:
        raise NotImplementedError

    def fetch_page(self, start: int, limit: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def index_of(self, record: Dict[str, Any]) -> int:
        return int(record["updated_index"])

    def timestamp_of(self, record: Dict[str, Any]) -> Optional[float]:
        """Settlement timestamp, or None if the record is not settled yet."""
        raise NotImplementedError

    def derive(self, record: Dict[str, Any], index: int) -> Any:
        """Build the output row; may call auxiliary lookups."""
        raise NotImplementedError

    def is_filtered(self, row: Any) -> bool:
        return False

    def count_filtered(self, stats: FilterStats, row: Any) -> None:
        stats.add()

    def accumulate(self, totals: Totals, row: Any) -> None:
        pass


class WindowAccumulator:
    """
    Per-domain window state for a single report.

    Invariants:
    - An index lands in at most one of `accepted` / `filtered` and is never
      evaluated twice, which makes overlapping pages harmless.
    - `oldest_seen` only decreases.
    - Totals only grow.
    """

    def __init__(self, domain: EventDomain, cutoff: int, now: int,
                 limit: int = 0, totals: Optional[Totals] = None):
        self.domain = domain
        self.cutoff = cutoff
        self.limit = limit
        self.oldest_seen: float = now
        self.accepted: Dict[int, Any] = {}
        self.filtered: Set[int] = set()
        self.filter_stats = FilterStats()
        self.totals = totals if totals is not None else Totals()
        self.pages_walked = 0
        self.phase = WindowPhase.WALKING

    def below_cutoff(self) -> bool:
        return self.oldest_seen < self.cutoff

    def process(self, record: Dict[str, Any]) -> None:
        if self.phase is not WindowPhase.WALKING:
            raise RuntimeError(f"{self.domain.name} window already finalized")

        timestamp = self.domain.timestamp_of(record)
        if timestamp is None:
            return

        index = self.domain.index_of(record)
        if index in self.accepted or index in self.filtered:
            return

        self.oldest_seen = min(self.oldest_seen, timestamp)

        if not self.domain.boundary.contains(timestamp, self.cutoff):
            return

        try:
            row = self.domain.derive(record, index)
        except ValueError as e:
            raise IntegrityViolation(self.domain.name, f"malformed amount: {e}", index) from e

        if self.domain.is_filtered(row):
            self.domain.count_filtered(self.filter_stats, row)
            self.filtered.add(index)
            return

        self.domain.accumulate(self.totals, row)
        self.accepted[index] = row

    def process_page(self, records: List[Dict[str, Any]]) -> None:
        """Process one page newest first so oldest_seen is final for the page."""
        self.pages_walked += 1
        for record in sorted(records, key=self.domain.index_of, reverse=True):
            self.process(record)

    def walk(self, page_size: int) -> 'WindowAccumulator':
        """
        Drive the Cursor Pager over the domain until the window is covered.

        Transport errors are wrapped in ReportError naming the domain;
        IntegrityViolation propagates unchanged.
        """
        try:
            tip = self.domain.tip()
        except (RpcError, OSError) as e:
            raise ReportError(self.domain.name, "tip", e) from e

        pages = reverse_pages(tip, page_size, self.domain.fetch_page, self.below_cutoff)
        while True:
            try:
                page = next(pages)
            except StopIteration:
                break
            except (RpcError, OSError) as e:
                raise ReportError(self.domain.name, "fetch_page", e) from e
            try:
                self.process_page(page)
            except (RpcError, OSError) as e:
                raise ReportError(self.domain.name, "derive", e) from e
        return self

    def finalize(self) -> List[Any]:
        """Apply the limit (most recent by index) and sort by timestamp."""
        if self.phase is WindowPhase.FINALIZED:
            raise RuntimeError(f"{self.domain.name} window already finalized")
        self.phase = WindowPhase.FINALIZED

        indexes = sorted(self.accepted)
        if self.limit > 0 and len(indexes) > self.limit:
            indexes = indexes[-self.limit:]
        rows = [self.accepted[i] for i in indexes]
        rows.sort(key=lambda row: row.timestamp)
        return rows
