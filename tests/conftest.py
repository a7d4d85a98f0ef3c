"""
Pytest fixtures for cl-summars tests.

Provides a mock plugin, an in-memory lightningd RPC fake and sample data.
"""

from typing import Any, Dict, List, Optional

import pytest
from unittest.mock import MagicMock

from pyln.client import RpcError


NOW = 1_700_000_000
HOUR = 3600


class FakeLightningRpc:
    """
    In-memory stand-in for lightningd's JSON-RPC, exposing `call(method, payload)`.

    Paged list calls honour `start`/`limit` on `updated_index` the way
    lightningd does, so pager and accumulator code can be exercised end to end.
    """

    def __init__(self, node_id: str = "02" + "f" * 64):
        self.node_id = node_id
        self.forwards: List[Dict[str, Any]] = []
        self.pays: List[Dict[str, Any]] = []
        self.invoices: List[Dict[str, Any]] = []
        self.holdinvoices: List[Dict[str, Any]] = []
        self.channels: List[Dict[str, Any]] = []
        self.peers: List[Dict[str, Any]] = []
        self.outputs: List[Dict[str, Any]] = []
        self.nodes: Dict[str, Optional[str]] = {}
        self.decoded: Dict[str, Dict[str, Any]] = {}
        self.getinfo: Dict[str, Any] = {
            "id": node_id,
            "address": [{"type": "ipv4", "address": "203.0.113.5", "port": 9735}],
            "binding": [],
            "fees_collected_msat": 0,
        }
        self.calls: List[tuple] = []
        self.fail_methods: Dict[str, Exception] = {}

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [payload for m, payload in self.calls if m == method]

    @staticmethod
    def _page(records, start, limit, key="updated_index"):
        selected = [r for r in records if start <= r[key] < start + limit]
        return sorted(selected, key=lambda r: r[key])

    @staticmethod
    def _tip(records):
        return max((r["updated_index"] for r in records), default=0)

    def call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = payload or {}
        self.calls.append((method, payload))
        if method in self.fail_methods:
            raise self.fail_methods[method]

        if method == "wait":
            source = {"forwards": self.forwards, "sendpays": self.pays,
                      "invoices": self.invoices}[payload["subsystem"]]
            return {payload["subsystem"]: {}, "updated": self._tip(source)}
        if method == "listforwards":
            records = [r for r in self.forwards if r.get("status") == payload.get("status", r.get("status"))]
            return {"forwards": self._page(records, payload["start"], payload["limit"])}
        if method == "listpays":
            records = [r for r in self.pays if r.get("status") == payload.get("status", r.get("status"))]
            return {"pays": self._page(records, payload["start"], payload["limit"])}
        if method == "listinvoices":
            return {"invoices": self._page(self.invoices, payload["start"], payload["limit"])}
        if method == "holdinvoicelookup":
            constraints = payload["constraints"]
            records = sorted((r for r in self.holdinvoices if r["id"] >= constraints["index_start"]),
                             key=lambda r: r["id"])
            return {"holdinvoices": records[:constraints["limit"]]}
        if method == "listnodes":
            node_id = payload["id"]
            if node_id not in self.nodes:
                return {"nodes": []}
            node = {"nodeid": node_id}
            if self.nodes[node_id] is not None:
                node["alias"] = self.nodes[node_id]
            return {"nodes": [node]}
        if method == "decode":
            return self.decoded[payload["string"]]
        if method == "getinfo":
            return self.getinfo
        if method == "listpeers":
            return {"peers": self.peers}
        if method == "listpeerchannels":
            return {"channels": self.channels}
        if method == "listfunds":
            return {"outputs": self.outputs, "channels": []}
        raise RpcError(method, payload, {"code": -32601, "message": f"Unknown command '{method}'"})


def make_forward(index: int, resolved_time: float, in_msat: int = 1_001_000,
                 out_msat: int = 1_000_000, in_channel: str = "100x1x0",
                 out_channel: str = "200x1x0", status: str = "settled") -> Dict[str, Any]:
    return {
        "created_index": index,
        "updated_index": index,
        "in_channel": in_channel,
        "out_channel": out_channel,
        "in_msat": in_msat,
        "out_msat": out_msat,
        "fee_msat": in_msat - out_msat,
        "status": status,
        "received_time": resolved_time - 0.5,
        "resolved_time": resolved_time,
    }


def make_pay(index: int, completed_at: int, destination: str, amount_msat: int = 50_000_000,
             fee_msat: int = 12_000) -> Dict[str, Any]:
    return {
        "created_index": index,
        "updated_index": index,
        "payment_hash": f"{index:064x}",
        "status": "complete",
        "destination": destination,
        "created_at": completed_at - 2,
        "completed_at": completed_at,
        "amount_msat": amount_msat,
        "amount_sent_msat": amount_msat + fee_msat,
        "preimage": "ab" * 32,
        "bolt11": f"lnbcrt{index}",
    }


def make_invoice(index: int, paid_at: Optional[int], amount_msat: int = 20_000_000,
                 status: str = "paid") -> Dict[str, Any]:
    invoice = {
        "created_index": index,
        "updated_index": index,
        "label": f"invoice-{index}",
        "payment_hash": f"{index:064x}",
        "status": status,
        "description": f"coffee #{index}",
        "amount_msat": amount_msat,
    }
    if status == "paid":
        invoice["paid_at"] = paid_at
        invoice["amount_received_msat"] = amount_msat
        invoice["payment_preimage"] = "cd" * 32
    return invoice


def make_channel(peer_id: str, scid: Optional[str], to_us_msat: int = 600_000_000,
                 total_msat: int = 1_000_000_000, state: str = "CHANNELD_NORMAL",
                 connected: bool = True, private: bool = False) -> Dict[str, Any]:
    channel = {
        "peer_id": peer_id,
        "peer_connected": connected,
        "state": state,
        "private": private,
        "to_us_msat": to_us_msat,
        "total_msat": total_msat,
        "our_reserve_msat": 10_000_000,
        "their_reserve_msat": 10_000_000,
        "minimum_htlc_out_msat": 1_000,
        "maximum_htlc_out_msat": 990_000_000,
        "fee_base_msat": 1_000,
        "fee_proportional_millionths": 250,
        "htlcs": [],
        "updates": {"remote": {"fee_base_msat": 0, "fee_proportional_millionths": 100}},
    }
    if scid is not None:
        channel["short_channel_id"] = scid
    return channel


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """In-memory lightningd RPC."""
    return FakeLightningRpc()


@pytest.fixture
def rpc_plugin(mock_plugin, mock_rpc):
    """Mock plugin whose rpc is the in-memory fake."""
    mock_plugin.rpc = mock_rpc
    return mock_plugin


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def snapshot():
    """Default report configuration."""
    from summars.config import Config
    return Config().snapshot()
