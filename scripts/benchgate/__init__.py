"""Benchmark regression gate components.

This package contains the pieces used by ``bench_gate.py`` to generate test
vectors, capture a named baseline on a reference revision, and compare a
candidate revision against it, organised by responsibility.
"""

from __future__ import annotations

__version__ = "0.1.0"
