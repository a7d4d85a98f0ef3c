"""
Alias cache for cl-summars

Peer aliases come from gossip (`listnodes`). Looking them up for every row of
every report would be slow on large nodes, so resolved aliases are cached in
an `AliasStore` that a background refresher rebuilds periodically.

Two sentinels are stored for peers without a usable alias:
- NO_ALIAS_SET: the node is in gossip but never announced an alias
- NODE_GOSSIP_MISS: the node is unknown to our gossip store
"""

import threading
import time
from typing import Dict, Iterable, Optional

from pyln.client import Plugin


NO_ALIAS_SET = "NO_ALIAS_SET"
NODE_GOSSIP_MISS = "NODE_GOSSIP_MISS"


class AliasStore:
    """Thread-safe peer_id -> alias map."""

    def __init__(self):
        self._lock = threading.Lock()
        self._aliases: Dict[str, str] = {}

    def get(self, peer_id: str) -> Optional[str]:
        with self._lock:
            return self._aliases.get(peer_id)

    def upsert(self, peer_id: str, alias: str) -> None:
        with self._lock:
            self._aliases[peer_id] = alias

    def replace(self, aliases: Dict[str, str]) -> None:
        with self._lock:
            self._aliases = dict(aliases)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._aliases)


class AliasResolver:
    """
    Resolves peer ids to aliases through the cache, falling back to listnodes.

    RPC errors propagate: an alias lookup failure fails the report.
    """

    def __init__(self, plugin: Plugin, store: AliasStore):
        self.plugin = plugin
        self.store = store

    def lookup_gossip(self, peer_id: str) -> str:
        nodes = self.plugin.rpc.call("listnodes", {"id": peer_id}).get("nodes", [])
        if not nodes:
            return NODE_GOSSIP_MISS
        return nodes[0].get("alias") or NO_ALIAS_SET

    def resolve(self, peer_id: str) -> str:
        cached = self.store.get(peer_id)
        if cached is not None:
            return cached
        alias = self.lookup_gossip(peer_id)
        self.store.upsert(peer_id, alias)
        return alias

    def display_name(self, peer_id: str) -> str:
        """Alias for display; falls back to the pubkey when gossip has nothing."""
        alias = self.resolve(peer_id)
        if alias in (NO_ALIAS_SET, NODE_GOSSIP_MISS):
            return peer_id
        return alias

    def refresh(self, peer_ids: Iterable[str]) -> float:
        """
        Rebuild the cache for the given peers.

        Returns:
            Percentage of peers missing from gossip (0.0 - 100.0)
        """
        fresh: Dict[str, str] = {}
        misses = 0
        for peer_id in set(peer_ids):
            alias = self.lookup_gossip(peer_id)
            if alias == NODE_GOSSIP_MISS:
                misses += 1
            fresh[peer_id] = alias
        self.store.replace(fresh)
        if not fresh:
            return 0.0
        return misses / len(fresh) * 100.0


def next_refresh_seconds(miss_percent: float, refresh_hours: int) -> int:
    """
    Sleep until the next alias refresh.

    Right after startup gossip is often incomplete, so a high miss rate
    schedules an early retry instead of waiting the configured hours.
    """
    if miss_percent <= 5.0:
        return refresh_hours * 60 * 60
    if miss_percent <= 10.0:
        return 60 * 60
    if miss_percent <= 25.0:
        return 10 * 60
    return 60


def refresh_aliases(plugin: Plugin, resolver: AliasResolver, refresh_hours: int) -> int:
    """Refresh the alias cache for all channel peers; returns the next sleep."""
    started = time.time()
    plugin.log("Starting alias map refresh")
    channels = plugin.rpc.call("listpeerchannels", {}).get("channels", [])
    miss_percent = resolver.refresh(c["peer_id"] for c in channels if c.get("peer_id"))
    next_sleep = next_refresh_seconds(miss_percent, refresh_hours)
    plugin.log(
        f"Alias map refresh done in: {int((time.time() - started) * 1000)}ms. "
        f"Next refresh in {next_sleep}s"
    )
    return next_sleep


def alias_refresh_loop(plugin: Plugin, resolver: AliasResolver, config,
                       shutdown_event: threading.Event) -> None:
    """Background loop keeping the alias cache warm until shutdown."""
    while not shutdown_event.is_set():
        try:
            sleep_time = refresh_aliases(plugin, resolver, config.refresh_alias)
        except Exception as e:
            plugin.log(f"Error in refresh_alias thread: {e}", level='warn')
            sleep_time = 60
        if shutdown_event.wait(sleep_time):
            plugin.log("Alias refresh loop stopping due to shutdown signal")
            break
