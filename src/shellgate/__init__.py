"""
shellgate: guarded shell command runtime.

Purpose
- Let an agent or operator issue free-text commands against a real workspace while
  blocking shell injection, gating risky programs behind explicit approval, bounding
  runaway processes, and recording every fact in an append-only ledger.

Import boundary
- Importing the package must not configure logging, open databases, or spawn processes.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
