"""
Pipeline components: record parsing and instrument discovery
"""
from .record_parser import ParseResult, RecordParser, parse_row, parse_window_start
from .discovery import DiscoveryResult, InstrumentDiscovery

__all__ = [
    'ParseResult',
    'RecordParser',
    'parse_row',
    'parse_window_start',
    'DiscoveryResult',
    'InstrumentDiscovery',
]
