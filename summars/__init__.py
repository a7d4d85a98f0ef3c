"""
cl-summars package

Core modules of the summars plugin:
- pager: reverse pagination over lightningd's updated index
- window: per-domain window accumulator (dedup, filters, totals, limit)
- flows: forwards, pays, invoices and hold invoice domains
- availability: peer availability estimator and store
- aliases: peer alias cache
- latency: bounded ping sweep
- summary: report assembly
- render: prettytable output
- config: options and validation
"""

from .config import Config, ConfigError, ConfigSnapshot
from .window import IntegrityViolation, ReportError, WindowAccumulator
from .availability import AvailabilityEstimator, AvailabilityStore
from .aliases import AliasResolver, AliasStore
from .latency import LatencyProbeSweep
from .summary import ReportBuilder

__all__ = [
    'Config',
    'ConfigError',
    'ConfigSnapshot',
    'IntegrityViolation',
    'ReportError',
    'WindowAccumulator',
    'AvailabilityEstimator',
    'AvailabilityStore',
    'AliasResolver',
    'AliasStore',
    'LatencyProbeSweep',
    'ReportBuilder',
]
