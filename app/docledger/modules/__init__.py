"""
Feature modules live under this package.

Each module owns its routes and models and reuses the platform primitives
(auth, audit ledger, storage, DB session) from ``app.docledger``.
"""
