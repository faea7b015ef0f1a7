"""
Trilateration Hub Core Package.

Coordination service for RSSI-based 3D positioning of a single mobile target
from a small set of fixed WiFi anchor nodes.

Package structure:
- io: Per-connection session protocol (handshake, identity, dispatch)
- proto: Wire message schemas and position estimate output
- localization: Signal model, position solver, anchor registry
- domain: Coordination service wiring registry, solver and sessions
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
__author__ = "Trilateration Hub Team"
