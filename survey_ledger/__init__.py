"""Anonymous survey ledger: encrypted tallies, escrowed rewards, two-phase reveal."""
