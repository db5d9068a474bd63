"""
Costing Kernel

Persistence, error taxonomy, and logging for the FIFO inventory costing core:
- Stock lots with immutable initial and mutable remaining quantities
- Lot consumption ledger for sales and purchase returns
- Append-only cost audit trail for retroactive recalculation
"""

__version__ = "0.1.0"
