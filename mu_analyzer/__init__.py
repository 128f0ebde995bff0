"""
MU Analyzer — capturing proxy for the MU Online client/server protocol.

Components:
    sniffer/   — listener, relay pumps, captured connections, capture files
    protocol/  — packet headers, client versions, decode rules, analyzer
    data/      — filter expressions, live filtered views, connection list
    main.py    — command line entry point
"""

__version__ = "0.1.0"
