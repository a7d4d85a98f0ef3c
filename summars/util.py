"""
Small helpers shared by the cl-summars modules.
"""

import re
from typing import Any, Dict, Optional, Tuple


# Channel states counted as "active" for availability tracking and the
# num_channels counter.
ACTIVE_CHANNEL_STATES = frozenset({
    "OPENINGD",
    "CHANNELD_AWAITING_LOCKIN",
    "CHANNELD_NORMAL",
    "DUALOPEND_OPEN_INIT",
    "DUALOPEND_AWAITING_LOCKIN",
    "CHANNELD_AWAITING_SPLICE",
})

# lightningd state name -> short name shown in the STATE column
SHORT_CHANNEL_STATES: Dict[str, str] = {
    "OPENINGD": "OPENING",
    "CHANNELD_AWAITING_LOCKIN": "AWAIT_LOCK",
    "CHANNELD_NORMAL": "OK",
    "CHANNELD_SHUTTING_DOWN": "SHUTTING_DOWN",
    "CLOSINGD_SIGEXCHANGE": "CLOSINGD_SIGEX",
    "CLOSINGD_COMPLETE": "CLOSINGD_DONE",
    "AWAITING_UNILATERAL": "AWAIT_UNILATERAL",
    "FUNDING_SPEND_SEEN": "FUNDING_SPEND",
    "ONCHAIN": "ONCHAIN",
    "DUALOPEND_OPEN_INIT": "DUAL_OPEN",
    "DUALOPEND_OPEN_COMMITTED": "DUAL_COMITTED",
    "DUALOPEND_OPEN_COMMIT_READY": "DUAL_COMMIT_RDY",
    "DUALOPEND_AWAITING_LOCKIN": "DUAL_AWAIT",
    "CHANNELD_AWAITING_SPLICE": "AWAIT_SPLICE",
}


# listpays gained created_index paging in this release
MIN_INDEXED_PAYS_VERSION = "24.11"

_VERSION_RE = re.compile(r"(\d+)\.(\d+)")


def version_tuple(version: str) -> Optional[Tuple[int, int]]:
    """(major, minor) from strings like 'v24.11.1-modded', or None."""
    match = _VERSION_RE.search(version or "")
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def at_or_above_version(version: str, minimum: str) -> bool:
    current = version_tuple(version)
    required = version_tuple(minimum)
    if current is None or required is None:
        return False
    return current >= required


def check_node_version(plugin) -> bool:
    """Warn when the node predates indexed listpays; returns whether it is supported."""
    version = plugin.rpc.call("getinfo").get("version", "")
    if at_or_above_version(version, MIN_INDEXED_PAYS_VERSION):
        return True
    plugin.log(
        f"Core Lightning {version} is older than {MIN_INDEXED_PAYS_VERSION}: "
        f"the pays section needs indexed listpays and will fail on this node",
        level='warn',
    )
    return False


def is_active_state(channel: Dict[str, Any]) -> bool:
    return channel.get("state") in ACTIVE_CHANNEL_STATES


def short_state(state: Optional[str]) -> str:
    if state is None:
        return "UNKNOWN"
    return SHORT_CHANNEL_STATES.get(state, state)


def parse_msat(msat_val: Any) -> Optional[int]:
    """
    Convert an msat value to an integer, or None when the field is absent.

    Handles '1000msat' strings, raw integers and pyln Millisatoshi objects.
    Unparseable strings raise ValueError so bad data is not silently zeroed.
    """
    if msat_val is None:
        return None
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        raise ValueError(f"Not an msat amount: {msat_val!r}")
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        return int(clean_val)
    raise ValueError(f"Not an msat amount: {msat_val!r}")


def msat_to_sats(msat: int) -> int:
    """Round half away from zero, matching how amounts are shown by lightning-cli."""
    return int(msat / 1000 + 0.5)


def make_channel_flags(private: Optional[bool], offline: bool) -> str:
    """
    Two-character flag column: P = private, E = privacy unknown, O = offline.

    >>> make_channel_flags(True, False)
    '[P_]'
    """
    if private is None:
        first = "E"
    else:
        first = "P" if private else "_"
    return f"[{first}{'O' if offline else '_'}]"


def format_sats(amount: int) -> str:
    return f"{amount:,}"


def format_btc(msat: int) -> str:
    return f"{msat / 100_000_000_000:.8f}"


def ascii_only(text: str) -> str:
    return "".join(c if c.isascii() else "?" for c in text)
