"""
Documents module.

Lifecycle: uploaded -> accepted | rejected (both terminal).
- Content fingerprint, storage reference and file descriptors are fixed at upload
- Only accept/reject change a document, and only through a status compare-and-swap
- Every state change is written to the append-only audit ledger in the same transaction
"""
