"""
Peer Availability Estimator for cl-summars

Tracks how often each channel peer is connected using an exponentially
weighted moving average sampled every `availability_interval` seconds.

The smoothing window grows with the number of observations until it reaches
`availability_window` hours:

    lead    = clamp(count * interval, interval, window)
    samples = lead / interval
    alpha   = 1 / samples
    avail   = connected * alpha + avail * (1 - alpha)

so a new peer converges quickly while a long-lived peer needs a sustained
change before its uptime figure moves.

The estimator is the only writer of the `AvailabilityStore`. Reports read
through an `AvailabilityView` and never block on disk I/O.
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pyln.client import Plugin, RpcError

from .util import is_active_state


AVAILDB_DIR = "summars"
AVAILDB_FILE = "availdb.json"

UNKNOWN_AVAILABILITY = -1.0


@dataclass
class PeerAvailability:
    count: int
    connected: bool
    avail: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PeerAvailability':
        return cls(
            count=int(data["count"]),
            connected=bool(data["connected"]),
            avail=float(data["avail"]),
        )


class AvailabilityStore:
    """Lock protected peer_id -> PeerAvailability map."""

    def __init__(self, initial: Optional[Dict[str, PeerAvailability]] = None):
        self._lock = threading.Lock()
        self._peers: Dict[str, PeerAvailability] = dict(initial or {})

    def get(self, peer_id: str) -> Optional[PeerAvailability]:
        with self._lock:
            record = self._peers.get(peer_id)
            return None if record is None else PeerAvailability(**asdict(record))

    def upsert(self, peer_id: str, record: PeerAvailability) -> None:
        with self._lock:
            self._peers[peer_id] = record

    def publish(self, peers: Dict[str, PeerAvailability]) -> None:
        """Replace the whole map at once."""
        with self._lock:
            self._peers = dict(peers)

    def snapshot(self) -> Dict[str, PeerAvailability]:
        with self._lock:
            return {k: PeerAvailability(**asdict(v)) for k, v in self._peers.items()}

    def view(self) -> 'AvailabilityView':
        return AvailabilityView(self)


class AvailabilityView:
    """Read-only access for the report path."""

    def __init__(self, store: AvailabilityStore):
        self._store = store

    def get_avail(self, peer_id: str) -> float:
        record = self._store.get(peer_id)
        return UNKNOWN_AVAILABILITY if record is None else record.avail

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {k: v.to_dict() for k, v in self._store.snapshot().items()}


# =============================================================================
# PERSISTENCE
# =============================================================================

def availdb_path(lightning_dir: str) -> Path:
    return Path(lightning_dir) / AVAILDB_DIR / AVAILDB_FILE


def load_availability(path: Path, plugin: Optional[Plugin] = None) -> Dict[str, PeerAvailability]:
    """
    Read the persisted map. Missing, unreadable or corrupt files yield an
    empty map; individual malformed entries are skipped.
    """
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        if plugin:
            plugin.log(f"Could not read availability db {path}: {e}. Starting empty.", level='warn')
        return {}

    if not isinstance(raw, dict):
        if plugin:
            plugin.log(f"Availability db {path} is not a JSON object. Starting empty.", level='warn')
        return {}

    peers = {}
    for peer_id, data in raw.items():
        try:
            peers[peer_id] = PeerAvailability.from_dict(data)
        except (KeyError, TypeError, ValueError):
            if plugin:
                plugin.log(f"Skipping malformed availability entry for {peer_id}", level='debug')
    return peers


def save_availability(path: Path, peers: Dict[str, PeerAvailability]) -> None:
    """Write the map to a temporary file in the same directory and rename it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".availdb-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump({k: v.to_dict() for k, v in peers.items()}, f)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# =============================================================================
# ESTIMATOR
# =============================================================================

def smoothing_factor(count: int, interval: int, window_seconds: int) -> float:
    """alpha for a peer with `count` previous observations."""
    lead = min(max(count * interval, interval), window_seconds)
    samples = lead / interval
    return 1.0 / samples


def peer_liveness(channels: Iterable[Dict[str, Any]]) -> Dict[str, bool]:
    """
    Group active channels by peer.

    A peer counts as connected if any of its active channels reports
    `peer_connected`.
    """
    peers: Dict[str, bool] = {}
    for channel in channels:
        if not is_active_state(channel):
            continue
        peer_id = channel.get("peer_id")
        if peer_id is None:
            continue
        peers[peer_id] = peers.get(peer_id, False) or bool(channel.get("peer_connected"))
    return peers


class AvailabilityEstimator:
    """
    Interval-driven EWMA of peer connectivity.

    Usage:
        estimator = AvailabilityEstimator(plugin, store, path, 300, 72)
        thread = threading.Thread(target=estimator.run, args=(shutdown_event,), daemon=True)
    """

    def __init__(self, plugin: Plugin, store: AvailabilityStore, path: Optional[Path],
                 interval: int, window_hours: int):
        if interval <= 0:
            raise ValueError(f"availability interval must be positive, not {interval}")
        self.plugin = plugin
        self.store = store
        self.path = path
        self.interval = interval
        self.window_seconds = max(window_hours * 60 * 60, interval)
        # Working copy, only touched by the estimator thread
        self._peers: Dict[str, PeerAvailability] = store.snapshot()

    def tick(self, channels: List[Dict[str, Any]]) -> Dict[str, PeerAvailability]:
        """Fold one liveness observation per peer into the estimate."""
        peers = dict(self._peers)
        for peer_id, connected in peer_liveness(channels).items():
            value = 1.0 if connected else 0.0
            previous = self._peers.get(peer_id)
            if previous is None:
                previous = PeerAvailability(count=0, connected=connected, avail=value)

            alpha = smoothing_factor(previous.count, self.interval, self.window_seconds)
            # Published records are never mutated; each tick builds new ones
            peers[peer_id] = replace(
                previous,
                avail=value * alpha + previous.avail * (1.0 - alpha),
                connected=connected,
                count=previous.count + 1,
            )

        self._peers = peers
        self.store.publish(peers)
        self.persist()
        return self._peers

    def persist(self) -> None:
        if self.path is None:
            return
        try:
            save_availability(self.path, self._peers)
        except OSError as e:
            self.plugin.log(f"Could not write availability db {self.path}: {e}", level='warn')

    def run_once(self) -> None:
        channels = self.plugin.rpc.call("listpeerchannels", {}).get("channels", [])
        self.tick(channels)

    def run(self, shutdown_event: threading.Event) -> None:
        """Tick every `interval` seconds until the shutdown event is set."""
        self.plugin.log(
            f"Availability estimator started (interval={self.interval}s, "
            f"window={self.window_seconds}s)"
        )
        while not shutdown_event.is_set():
            try:
                self.run_once()
            except RpcError as e:
                self.plugin.log(f"RPC error in availability estimator: {e}", level='warn')
            except Exception as e:
                self.plugin.log(f"Error in availability estimator: {e}", level='error')

            if shutdown_event.wait(self.interval):
                self.plugin.log("Availability estimator stopping due to shutdown signal")
                break
