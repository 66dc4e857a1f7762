"""
robustloc: robust multilateration from ranging and RSSI readings.

Packages:
- proto: sources, readings, fingerprints, solutions
- localization: correspondence builder, lateration solvers, robust
  estimators and the sequential ranging + RSSI estimator
- metrics: diagnostic counters
"""

__version__ = '0.1.0'
