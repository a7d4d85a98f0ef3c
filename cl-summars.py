#!/usr/bin/env python3
"""
cl-summars: A node summary plugin for Core Lightning

Prints a summary of the node: channels with their balances, fees, peer
uptime and optional ping, followed by the settled forwards, completed pays
and paid invoices of a configurable time window.

Background work:
- availability estimator: samples peer connectivity every
  `summars-availability-interval` seconds into a smoothed uptime figure that
  survives restarts (<lightning-dir>/summars/availdb.json)
- alias refresher: keeps a cache of peer aliases from gossip

Dependencies:
- pyln-client: Core Lightning plugin framework
- prettytable: table rendering

License: MIT
"""

import os
import signal
import threading
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcError

from summars.aliases import AliasResolver, AliasStore, alias_refresh_loop, refresh_aliases
from summars.availability import (
    AvailabilityEstimator,
    AvailabilityStore,
    availdb_path,
    load_availability,
)
from summars.config import Config, ConfigError, OPTION_FIELDS
from summars.flows import HoldInvoiceSource
from summars.latency import rpc_ping
from summars.render import render_report
from summars.summary import ReportBuilder
from summars.util import check_node_version
from summars.window import IntegrityViolation, ReportError


plugin = Plugin()

# Set on SIGTERM (`lightning-cli plugin stop cl-summars`) so the background
# loops exit right away instead of finishing their sleep.
shutdown_event = threading.Event()

config: Optional[Config] = None
alias_store = AliasStore()
availability_store = AvailabilityStore()
holdinvoice_source = HoldInvoiceSource()
resolver: Optional[AliasResolver] = None
report_builder: Optional[ReportBuilder] = None


# =============================================================================
# OPTIONS
# =============================================================================

_OPT_TYPES = {"int": "int", "bool": "bool"}

for _name, _spec in OPTION_FIELDS.items():
    plugin.add_option(
        name=_name,
        default=_spec.default,
        description=_spec.description,
        opt_type=_OPT_TYPES.get(_spec.kind, "string"),
    )


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize cl-summars.

    1. Parse and validate options
    2. Load persisted peer availability
    3. Start the availability estimator and the alias refresher
    """
    global config, resolver, report_builder

    plugin.log("Initializing cl-summars plugin...")

    config = Config()
    try:
        config.load_options(options)
    except ConfigError as e:
        plugin.log(f"Invalid configuration: {e}", level='error')
        return {"disable": str(e)}

    try:
        check_node_version(plugin)
    except RpcError as e:
        plugin.log(f"Could not read node version: {e}", level='warn')

    lightning_dir = configuration.get("lightning-dir", os.path.expanduser("~/.lightning"))
    rpc_file = configuration.get("rpc-file", "lightning-rpc")
    socket_path = rpc_file if os.path.isabs(rpc_file) else os.path.join(lightning_dir, rpc_file)

    path = availdb_path(lightning_dir)
    availability_store.publish(load_availability(path, plugin))
    plugin.log(f"Loaded availability for {len(availability_store.snapshot())} peers from {path}")

    resolver = AliasResolver(plugin, alias_store)
    report_builder = ReportBuilder(
        plugin,
        resolver,
        availability_store.view(),
        holdinvoice_source,
        rpc_ping(socket_path),
    )

    estimator = AvailabilityEstimator(
        plugin,
        availability_store,
        path,
        config.availability_interval,
        config.availability_window,
    )

    def handle_shutdown_signal(signum, frame):
        plugin.log("Received SIGTERM, stopping background threads")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    threading.Thread(target=estimator.run, args=(shutdown_event,),
                     daemon=True, name="availability-estimator").start()
    threading.Thread(target=alias_refresh_loop, args=(plugin, resolver, config, shutdown_event),
                     daemon=True, name="alias-refresh").start()

    plugin.log("cl-summars plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("summars")
def summars(plugin: Plugin, **kwargs) -> Dict[str, Any]:
    """
    Show a summary of channels and optionally recent forwards/pays/invoices.

    Any `summars-*` option can be passed to override it for this call only:
        lightning-cli summars -k summars-forwards=24 summars-sort-by=-OUT_SATS
    """
    if config is None or report_builder is None:
        return {"error": "Plugin not fully initialized"}

    try:
        cfg = config.snapshot().with_overrides(kwargs)
    except ConfigError as e:
        return {"error": str(e)}

    try:
        report = report_builder.build(cfg)
    except (ReportError, IntegrityViolation) as e:
        plugin.log(f"summars failed: {e}", level='warn')
        return {"error": str(e)}

    if cfg.json:
        return report.to_dict()
    return {"format-hint": "simple", "result": render_report(report)}


@plugin.method("summars-refreshalias")
def summars_refreshalias(plugin: Plugin) -> Dict[str, Any]:
    """Rebuild the alias cache now instead of waiting for the next refresh."""
    if config is None or resolver is None:
        return {"error": "Plugin not fully initialized"}
    try:
        refresh_aliases(plugin, resolver, config.refresh_alias)
    except RpcError as e:
        return {"error": f"Alias refresh failed: {e}"}
    return {"status": "ok", "aliases": len(alias_store.snapshot())}


@plugin.method("summars-availability")
def summars_availability(plugin: Plugin) -> Dict[str, Any]:
    """Current availability estimate per peer: {peer_id: {count, connected, avail}}."""
    return availability_store.view().snapshot()


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
