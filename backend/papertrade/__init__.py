"""PaperTrade: webhook signal execution on a virtual trading ledger."""
