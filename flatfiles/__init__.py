"""
Flat-file backfill package - bulk historical price downloads

Submodules are imported directly (flatfiles.orchestrator, flatfiles.clients, ...).
"""

__version__ = '1.0.0'
