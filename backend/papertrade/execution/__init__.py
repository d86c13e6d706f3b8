"""
Execution Module

- Charges: statutory charges and P&L
- OrderExecutor: simulated market orders against the virtual ledger
"""
