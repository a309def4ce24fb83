"""
Payments module.

Append-only payment ledger for contracted customers. The customer's wallet balance
is a cache of the ledger sum and is rewritten in the same transaction as each insert.
"""
