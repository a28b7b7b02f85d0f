"""Storage adapters, one module per provider.

Import the adapter module directly, or use omnistore.create_storage().
"""
