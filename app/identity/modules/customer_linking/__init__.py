"""
Customer linking module.

Scope:
- Phone normalization and tenant-scoped customer lookups
- Conflict detection between accounts, guests and existing customers
- Duplicate merge with dependent-record transfer
- Link/guest entry points and a small JSON API under /api

Hard constraints:
- Never cross tenants
- Never reassign a linked customer to another account
"""
