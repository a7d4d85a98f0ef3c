"""
Tests for channel rows, node info and report assembly.
"""
import dataclasses

import pytest

from pyln.client import RpcError

from conftest import NOW, HOUR, make_channel, make_forward, make_invoice, make_pay


PEER_A = "02" + "a" * 64
PEER_B = "02" + "b" * 64
PEER_C = "02" + "c" * 64


class TestChannelToRow:
    """Tests for channel_to_row()."""

    def test_balances_and_fees(self):
        """Channel rows carry sat balances and fees."""
        from summars.summary import channel_to_row

        row = channel_to_row(make_channel(PEER_A, "800000x1x0"), "Alice", 0.5)

        assert row.out_sats == 600_000
        assert row.in_sats == 400_000
        assert row.total_sats == 1_000_000
        assert row.perc_us == pytest.approx(60.0)
        assert row.scid_raw == (800000, 1, 0)
        assert row.min_htlc == 1
        assert row.max_htlc == 990_000
        assert row.base == 1_000
        assert row.ppm == 250
        assert row.in_base == 0
        assert row.in_ppm == 100
        assert row.uptime == pytest.approx(50.0)
        assert row.state == "OK"
        assert row.flag == "[__]"

    def test_unknown_availability(self):
        """Unknown availability stays -1 on the row."""
        from summars.summary import channel_to_row

        assert channel_to_row(make_channel(PEER_A, "1x1x0"), "a", -1.0).uptime == -1.0

    def test_flags(self):
        """Private and offline channels get their flags."""
        from summars.summary import channel_to_row

        row = channel_to_row(make_channel(PEER_A, "1x1x0", private=True, connected=False), "a", 1.0)

        assert row.flag == "[PO]"
        assert row.offline is True

    def test_pending_channel(self):
        """A channel without scid shows PENDING."""
        from summars.summary import channel_to_row, PENDING_SCID

        row = channel_to_row(make_channel(PEER_A, None, state="OPENINGD"), "a", 1.0)

        assert row.scid == "PENDING"
        assert row.scid_raw == PENDING_SCID
        assert row.state == "OPENING"

    def test_no_remote_updates(self):
        """Inbound fees stay unset without remote updates."""
        from summars.summary import channel_to_row

        channel = make_channel(PEER_A, "1x1x0")
        del channel["updates"]
        row = channel_to_row(channel, "a", 1.0)

        assert row.in_base is None
        assert row.in_ppm is None

    def test_missing_balance_is_integrity_violation(self):
        """A channel without to_us_msat is an integrity violation."""
        from summars.summary import channel_to_row
        from summars.window import IntegrityViolation

        channel = make_channel(PEER_A, "1x1x0")
        del channel["to_us_msat"]

        with pytest.raises(IntegrityViolation):
            channel_to_row(channel, "a", 1.0)

    @pytest.mark.parametrize("key", ["to_us_msat", "fee_base_msat", "minimum_htlc_out_msat"])
    def test_malformed_amount_is_integrity_violation(self, key):
        """An unparseable msat field on a channel is reported as bad channel data."""
        from summars.summary import channel_to_row
        from summars.window import IntegrityViolation

        channel = make_channel(PEER_A, "1x1x0")
        channel[key] = "bad"

        with pytest.raises(IntegrityViolation) as exc:
            channel_to_row(channel, "a", 1.0)
        assert exc.value.domain == "channels"

    def test_ascii_alias(self):
        """Aliases are ASCII-only when utf8 is off."""
        from summars.summary import channel_to_row

        assert channel_to_row(make_channel(PEER_A, "1x1x0"), "Zürich", 1.0, utf8=False).alias == "Z?rich"


class TestSorting:

    def _rows(self):
        from summars.summary import channel_to_row

        rows = [
            channel_to_row(make_channel(PEER_A, "800000x2x0", to_us_msat=100_000_000), "bob", 1.0),
            channel_to_row(make_channel(PEER_B, None), "@alice", 1.0),
            channel_to_row(make_channel(PEER_C, "700000x1x1", to_us_msat=900_000_000), "Carol", 1.0),
        ]
        rows[0].in_ppm = None
        return rows

    def test_scid_pending_last(self):
        """Pending channels sort after every scid."""
        from summars.config import SortOrder, SummaryColumn
        from summars.summary import sort_channels

        rows = sort_channels(self._rows(), SortOrder(SummaryColumn.SCID))

        assert [r.scid for r in rows] == ["700000x1x1", "800000x2x0", "PENDING"]

    def test_reverse(self):
        """Reverse sort inverts the order."""
        from summars.config import SortOrder, SummaryColumn
        from summars.summary import sort_channels

        rows = sort_channels(self._rows(), SortOrder(SummaryColumn.OUT_SATS, reverse=True))

        assert [r.out_sats for r in rows] == [900_000, 600_000, 100_000]

    def test_alias_ignores_case_and_symbols(self):
        """Alias sort ignores case and punctuation."""
        from summars.config import SortOrder, SummaryColumn
        from summars.summary import sort_channels

        rows = sort_channels(self._rows(), SortOrder(SummaryColumn.ALIAS))

        assert [r.alias for r in rows] == ["@alice", "bob", "Carol"]

    def test_missing_inbound_fee_sorts_last(self):
        """Channels without inbound fees sort last."""
        from summars.config import SortOrder, SummaryColumn
        from summars.summary import sort_channels

        rows = sort_channels(self._rows(), SortOrder(SummaryColumn.IN_PPM))

        assert rows[-1].in_ppm is None


class TestIsExcluded:

    @pytest.mark.parametrize("value,channel_kwargs,expected", [
        ("OK", {}, True),
        ("OK", {"state": "ONCHAIN"}, False),
        ("PRIVATE", {"private": True}, True),
        ("PRIVATE", {"private": False}, False),
        ("PUBLIC", {"private": False}, True),
        ("ONLINE", {"connected": True}, True),
        ("OFFLINE", {"connected": True}, False),
        ("OFFLINE", {"connected": False}, True),
        ("", {}, False),
    ])
    def test_rules(self, value, channel_kwargs, expected):
        """Exclusion matches state and connectivity rules."""
        from summars.config import parse_exclude_states
        from summars.summary import is_excluded

        channel = make_channel(PEER_A, "1x1x0", **channel_kwargs)

        assert is_excluded(channel, parse_exclude_states(value)) is expected


class TestNodeInfo:

    def test_address_prefers_ipv4(self):
        """Node address prefers an announced IPv4 address."""
        from summars.summary import node_address

        getinfo = {"id": "nodeid", "address": [
            {"type": "torv3", "address": "abc.onion", "port": 9735},
            {"type": "ipv4", "address": "203.0.113.5", "port": 9736},
        ]}

        assert node_address(getinfo) == "nodeid@203.0.113.5:9736"

    def test_address_falls_back_to_binding(self):
        """Without announcements the binding address is used."""
        from summars.summary import node_address

        getinfo = {"id": "nodeid", "address": [],
                   "binding": [{"type": "ipv4", "address": "127.0.0.1", "port": 19735}]}

        assert node_address(getinfo) == "nodeid@127.0.0.1:19735"

    def test_no_address(self):
        """A node without any address says none were found."""
        from summars.summary import node_address

        assert node_address({"id": "nodeid"}) == "No addresses found!"

    def test_counters_and_spendable(self):
        """Info block counts channels and spendable liquidity."""
        from summars.summary import build_node_info

        channels = [
            make_channel(PEER_A, "1x1x0", connected=True),
            make_channel(PEER_B, "2x1x0", connected=False),
            make_channel(PEER_C, "3x1x0", state="ONCHAIN"),
        ]
        peers = [{"id": PEER_A, "num_channels": 1}, {"id": "gossiper", "num_channels": 0}]
        outputs = [
            {"amount_msat": 2_000_000, "status": "confirmed"},
            {"amount_msat": 5_000_000, "status": "unconfirmed"},
        ]
        getinfo = {"id": "nodeid", "address": [], "fees_collected_msat": 1234}

        info = build_node_info(getinfo, peers, channels, outputs)

        assert info.num_channels == 2
        assert info.num_connected == 1
        assert info.num_gossipers == 1
        assert info.num_utxos == 2
        assert info.utxo_amount_msat == 2_000_000
        assert info.avail_out_msat == 2 * 590_000_000
        assert info.avail_in_msat == 2 * 390_000_000
        assert info.to_dict()["fees_collected"] == "0.00000001 BTC"


class TestReportBuilder:
    """Tests for ReportBuilder.build() against the in-memory node."""

    def _builder(self, rpc_plugin, probe=None):
        from summars.aliases import AliasResolver, AliasStore
        from summars.availability import AvailabilityStore, PeerAvailability
        from summars.flows import HoldInvoiceSource
        from summars.summary import ReportBuilder

        store = AvailabilityStore({PEER_A: PeerAvailability(count=5, connected=True, avail=0.75)})
        return ReportBuilder(rpc_plugin, AliasResolver(rpc_plugin, AliasStore()), store.view(),
                             HoldInvoiceSource(), probe or (lambda peer_id: None))

    def _node(self, rpc):
        rpc.nodes = {PEER_A: "Alice", PEER_B: None}
        rpc.channels = [
            make_channel(PEER_B, "800000x1x0", private=True, connected=False),
            make_channel(PEER_A, "700000x1x0"),
            make_channel(PEER_C, None, state="CHANNELD_AWAITING_LOCKIN"),
        ]
        rpc.peers = [{"id": PEER_A, "num_channels": 1}]

    def test_channels_only(self, rpc_plugin, mock_rpc, snapshot):
        """With every window off only channel rows are built."""
        self._node(mock_rpc)

        report = self._builder(rpc_plugin).build(snapshot, now=NOW)

        assert [r.scid for r in report.channels] == ["700000x1x0", "800000x1x0", "PENDING"]
        assert [r.alias for r in report.channels] == ["Alice", PEER_B, PEER_C]
        assert report.channels[0].uptime == pytest.approx(75.0)
        assert report.channels[1].uptime == -1.0
        assert report.forwards is None
        assert report.pays is None
        assert report.invoices is None
        assert mock_rpc.calls_to("listforwards") == []
        assert report.info.num_channels == 3

    def test_excluded_channels_counted(self, rpc_plugin, mock_rpc, snapshot):
        """Excluded channels are counted as filtered."""
        self._node(mock_rpc)
        cfg = snapshot.with_overrides({"exclude-states": "PRIVATE,AWAIT_LOCK"})

        report = self._builder(rpc_plugin).build(cfg, now=NOW)

        assert [r.peer_id for r in report.channels] == [PEER_A]
        assert report.channels_filtered == 2

    def test_windows_and_totals(self, rpc_plugin, mock_rpc, snapshot):
        """Enabled windows produce rows and totals."""
        self._node(mock_rpc)
        mock_rpc.forwards = [
            make_forward(1, NOW - 30 * HOUR),
            make_forward(2, NOW - 2 * HOUR, in_channel="700000x1x0", out_channel="800000x1x0"),
            make_forward(3, NOW - HOUR),
        ]
        mock_rpc.pays = [
            make_pay(1, NOW - 600, PEER_A, amount_msat=1_000_000, fee_msat=1_000),
            make_pay(2, NOW - 500, mock_rpc.node_id),
        ]
        mock_rpc.invoices = [make_invoice(1, NOW - 100, amount_msat=3_000_000)]
        cfg = snapshot.with_overrides({"forwards": 24, "pays": 24, "invoices": 24})

        report = self._builder(rpc_plugin).build(cfg, now=NOW)

        assert [r.resolved_time for r in report.forwards.rows] == [NOW - 2 * HOUR, NOW - HOUR]
        assert report.forwards.rows[0].in_alias == "Alice"
        assert report.forwards.rows[0].out_alias == "800000x1x0"
        assert report.totals.forwards_fees_msat == 2_000
        assert len(report.pays.rows) == 1
        assert report.pays.filter_stats.count == 1
        assert report.totals.pays_amount_sent_msat == 1_001_000
        assert report.totals.invoices_amount_received_msat == 3_000_000

        data = report.to_dict()
        assert data["filter_stats"]["pays"]["count"] == 1
        assert data["totals"]["pays_fees_msat"] == 1_000
        assert data["forwards"][0]["in_alias"] == "Alice"

    def test_limit_applied(self, rpc_plugin, mock_rpc, snapshot):
        """Flow limits keep the most recent rows."""
        self._node(mock_rpc)
        mock_rpc.forwards = [make_forward(i, NOW - (20 - i) * 60) for i in range(1, 21)]
        cfg = snapshot.with_overrides({"forwards": 1, "forwards-limit": 5, "page-size": 3})

        report = self._builder(rpc_plugin).build(cfg, now=NOW)

        assert len(report.forwards.rows) == 5
        # totals cover the whole window, not only the shown rows
        assert report.totals.forwards_fees_msat == 20 * 1_000

    def test_hold_invoices_merged(self, rpc_plugin, mock_rpc, snapshot):
        """Hold invoices are merged into the invoices section."""
        self._node(mock_rpc)
        mock_rpc.invoices = [make_invoice(1, NOW - 300, amount_msat=1_000_000)]
        mock_rpc.holdinvoices = [
            {"id": 1, "state": "SETTLED", "paid_at": NOW - 200, "amount_msat": 2_000_000,
             "payment_hash": "aa" * 32},
            {"id": 2, "state": "OPEN", "amount_msat": 9_000_000, "payment_hash": "bb" * 32},
        ]
        cfg = dataclasses.replace(snapshot.with_overrides({"invoices": 1}), holdinvoice_support=True)

        report = self._builder(rpc_plugin).build(cfg, now=NOW)

        assert [r.label for r in report.invoices.rows] == ["invoice-1", "Holdinvoice"]
        assert report.totals.invoices_amount_received_msat == 3_000_000

    def test_ping_column_runs_sweep(self, rpc_plugin, mock_rpc, snapshot):
        """The ping column triggers a latency sweep."""
        self._node(mock_rpc)
        probed = []
        cfg = snapshot.with_overrides({"columns": "SCID,ALIAS,PING", "sort-by": "PING"})

        report = self._builder(rpc_plugin, probe=probed.append).build(cfg, now=NOW)

        assert sorted(probed) == sorted([PEER_A, PEER_B, PEER_C])
        assert all(r.ping >= 1 for r in report.channels)

    def test_no_sweep_without_ping_column(self, rpc_plugin, mock_rpc, snapshot):
        """No sweep runs unless the ping column is shown."""
        self._node(mock_rpc)
        probed = []

        report = self._builder(rpc_plugin, probe=probed.append).build(snapshot, now=NOW)

        assert probed == []
        assert all(r.ping == 0 for r in report.channels)

    def test_rpc_failure_names_stage(self, rpc_plugin, mock_rpc, snapshot):
        """RPC failures name the failing stage."""
        from summars.window import ReportError

        mock_rpc.fail_methods["listpeerchannels"] = RpcError("listpeerchannels", {}, {"message": "x"})

        with pytest.raises(ReportError) as exc:
            self._builder(rpc_plugin).build(snapshot, now=NOW)
        assert exc.value.domain == "channels"
        assert exc.value.stage == "listpeerchannels"

    def test_stage_timings_logged(self, rpc_plugin, mock_rpc, snapshot):
        """Each build logs how long its stages took."""
        self._node(mock_rpc)

        self._builder(rpc_plugin).build(snapshot, now=NOW)

        messages = [c.args[0] for c in rpc_plugin.log.call_args_list]
        assert any(m.startswith("Sort summary. Total: ") for m in messages)
